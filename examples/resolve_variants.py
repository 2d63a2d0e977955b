"""Show how one formula resolves on different platforms and feature sets."""

from pathlib import Path

from kiln import load_formula, parse_platform, resolve

FORMULAS = Path(__file__).parent / "formulas"


def show_variants() -> None:
    formula = load_formula(FORMULAS / "wfdb.toml")
    for platform in ("linux/x86_64", "macos/aarch64"):
        for features in ({}, {"wave": False}):
            plan = resolve(formula, parse_platform(platform), features)
            print(platform, features or "defaults")
            print("  deps: ", ", ".join(plan.dependency_names))
            print("  flags:", " ".join(plan.flags))


if __name__ == "__main__":
    show_variants()
