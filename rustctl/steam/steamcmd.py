import sys
import queue
import shutil
import tarfile
import logging
import requests
from pathlib import Path
from typing import FrozenSet, List, Optional, TYPE_CHECKING
from rustctl.errors import DownloadError
from rustctl.steam.buildid import parse_buildid
from rustctl.system.process_utils import Dependency, collect_output
from rustctl.system.tracing import run_traced

if TYPE_CHECKING:
    from rustctl.game.resources import Resources

log = logging.getLogger(__name__)


class SteamCmd:
    """
    Drives SteamCMD, the distribution tool the game server is installed and updated with.

    SteamCMD itself lives in `<root>/steamcmd/` and is bootstrapped from
    `download_url` the first time it is needed.
    """

    def __init__(
        self,
        resources: "Resources",
        download_url: str,
        tracer: Optional[Dependency] = None,
        download_timeout: int = 30,
        dir_name: str = "steamcmd",
        entry_point: str = "steamcmd.sh",
    ):
        self.resources = resources
        self.download_url = download_url
        self.tracer = tracer
        self.download_timeout = download_timeout
        self.install_dir = resources.root_dir / dir_name
        self.dependency = Dependency(self.install_dir / entry_point)

    #* --- Bootstrap ---
    def _download_file(self, url: str, dest_path: Path) -> int:
        """Downloads a file with a simple progress bar. Returns the number of payload bytes written."""
        log.info(f"Downloading from {url}...")
        try:
            with requests.get(url, stream=True, timeout=self.download_timeout) as r:
                r.raise_for_status()
                total_size = int(r.headers.get("content-length", 0))
                downloaded = 0
                with open(dest_path, "wb") as f:
                    for chunk in r.iter_content(chunk_size=8192):
                        f.write(chunk)
                        downloaded += len(chunk)
                        done = int(50 * downloaded / total_size) if total_size else 0
                        sys.stdout.write(f"\r[{'=' * done}{' ' * (50-done)}] {downloaded/1024/1024:.2f} MB")
                        sys.stdout.flush()
            sys.stdout.write("\n")
        except (requests.RequestException, OSError) as e:
            dest_path.unlink(missing_ok=True)
            raise DownloadError(f"download of '{url}' failed: {e}") from e

        if downloaded < 1:
            dest_path.unlink(missing_ok=True)
            raise DownloadError(f"download of '{url}' returned an empty payload")
        log.info(f"Successfully downloaded {downloaded} bytes to '{dest_path}'.")
        return downloaded

    def _extract_archive(self, archive_path: Path, target_dir: Path) -> None:
        """Extracts a gzipped tarball, refusing members that would land outside `target_dir`."""
        log.info(f"Extracting '{archive_path.name}' into '{target_dir}'...")
        target = target_dir.resolve()
        try:
            with tarfile.open(archive_path, "r:*") as tar:
                for member in tar.getmembers():
                    destination = (target / member.name).resolve()
                    if destination != target and target not in destination.parents:
                        raise DownloadError(f"archive member '{member.name}' escapes '{target}'")
                tar.extractall(target, filter="data")
        except (tarfile.TarError, OSError) as e:
            raise DownloadError(f"extraction of '{archive_path}' failed: {e}") from e

    def ensure_installed(self) -> Dependency:
        """BLOCKING: Downloads and unpacks SteamCMD unless it is already present."""
        if self.dependency.is_available():
            log.debug(f"SteamCMD found at '{self.dependency.executable}'.")
            return self.dependency

        log.warning(f"SteamCMD not found at '{self.dependency.executable}'. Installing it...")
        self.install_dir.mkdir(parents=True, exist_ok=True)
        archive_path = self.install_dir / self.download_url.rstrip("/").split("/")[-1]
        try:
            self._download_file(self.download_url, archive_path)
            self._extract_archive(archive_path, self.install_dir)
        finally:
            archive_path.unlink(missing_ok=True)

        if not self.dependency.is_available():
            raise DownloadError(f"SteamCMD entry point '{self.dependency.executable}' missing or not executable after extraction")
        log.info("SteamCMD installed successfully.")
        return self.dependency

    #* --- Queries ---
    def clear_app_info_cache(self) -> bool:
        """
        Removes SteamCMD's local app info cache.

        While it exists, app_info_print has been seen returning stale build IDs.
        :return: True if a cache file was removed.
        """
        cache_path = self.resources.cache_path
        if not cache_path.exists():
            return False
        log.debug(f"Removing SteamCMD app info cache '{cache_path}'.")
        if cache_path.is_dir():
            shutil.rmtree(cache_path)
        else:
            cache_path.unlink()
        return True

    def query_remote_buildid(self) -> Optional[int]:
        """Asks Steam for the build ID of the public branch of the game server."""
        self.clear_app_info_cache()
        stdout: "queue.Queue[str]" = queue.Queue()
        self.dependency.exec(
            ["+login", "anonymous", "+app_info_update", "1",
             "+app_info_print", str(self.resources.app_id), "+quit"],
            work_dir=self.install_dir,
            stdout=stdout,
            run_till_end=True,
        )
        buildid = parse_buildid(collect_output(stdout))
        log.info(f"Latest remote build ID of app {self.resources.app_id}: {buildid}")
        return buildid

    #* --- Install & update ---
    def app_update_args(self, install_dir: Path, validate: bool) -> List[str]:
        args = [
            "+force_install_dir", str(install_dir),
            "+login", "anonymous",
            "+app_update", str(self.resources.app_id),
        ]
        if validate:
            args.append("validate")
        args.append("+quit")
        return args

    def install(self, install_dir: Path) -> FrozenSet[str]:
        """Fresh, validated install of the game server into `install_dir`. Returns the touched paths."""
        log.info(f"Installing app {self.resources.app_id} into '{install_dir}'...")
        return run_traced(
            self.dependency, self.app_update_args(install_dir, validate=True),
            work_dir=self.install_dir, tracer=self.tracer,
        )

    def update(self, install_dir: Path) -> FrozenSet[str]:
        """Updates an existing installation in `install_dir`. Returns the touched paths."""
        log.info(f"Updating app {self.resources.app_id} in '{install_dir}'...")
        return run_traced(
            self.dependency, self.app_update_args(install_dir, validate=False),
            work_dir=self.install_dir, tracer=self.tracer,
        )
