"""Install the wfdb formula into a local prefix and print the report."""

from pathlib import Path

from kiln import Orchestrator, ToolchainConfig
from kiln.errors import KilnError
from kiln.fetch import DownloadCache, HttpFetcher
from kiln.toolchain import ToolchainDriver

FORMULA = Path(__file__).parent / "formulas" / "wfdb.toml"


def install_wfdb(prefix: Path) -> int:
    config = ToolchainConfig(prefix=prefix, stage_timeout=1800)
    orchestrator = Orchestrator(
        fetcher=HttpFetcher(cache=DownloadCache(config.cache_root)),
        driver=ToolchainDriver(config),
    )
    try:
        result = orchestrator.install(FORMULA, {"docs": False})
    except KilnError as exc:
        assert exc.result is not None
        print(exc.result.describe())
        return exc.result.exit_code
    print(result.describe())
    return 0


if __name__ == "__main__":
    raise SystemExit(install_wfdb(Path.home() / ".local" / "wfdb"))
