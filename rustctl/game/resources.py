from pathlib import Path
from dataclasses import dataclass, field
from typing import Tuple


@dataclass(frozen=True)
class Resources:
    """
    Where the supervised game server lives. Built once per run and shared, read-only,
    by every lifecycle state.
    """
    root_dir: Path
    executable_name: str
    manifest_relpath: Path
    app_id: int
    cache_relpath: Path
    search_root: Path = Path("/")
    search_exclusions: Tuple[str, ...] = field(default_factory=tuple)

    def executable_path(self, install_dir: Path) -> Path:
        return install_dir / self.executable_name

    @property
    def cache_path(self) -> Path:
        return self.root_dir / self.cache_relpath

    def manifest_path(self, install_dir: Path) -> Path:
        return install_dir / self.manifest_relpath


def build_resources(settings) -> Resources:
    """Builds the immutable Resources from the effective settings."""
    return Resources(
        root_dir=Path(settings.ROOT_DIR).resolve(),
        executable_name=settings.GAME_EXECUTABLE_NAME,
        manifest_relpath=Path("steamapps") / f"appmanifest_{settings.STEAM_APP_ID}.acf",
        app_id=int(settings.STEAM_APP_ID),
        cache_relpath=Path(settings.APP_INFO_CACHE_RELPATH),
        search_root=Path(settings.SEARCH_ROOT),
        search_exclusions=tuple(str(p) for p in settings.SEARCH_EXCLUSIONS),
    )
