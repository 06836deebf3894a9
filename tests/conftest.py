"""Shared pytest fixtures."""

import sys
import stat
from pathlib import Path
from typing import Callable, Iterable, Optional

import pytest

from rustctl.game.resources import Resources
from rustctl.system.process_utils import Dependency

APP_ID = 258550

APP_INFO_PRINT = """\
AppID : 258550, change number : 27418839/0, last change : Thu Feb  6 18:12:15 2025
"258550"
{
	"common"
	{
		"name"		"Rust Dedicated Server"
		"type"		"Tool"
	}
	"depots"
	{
		"branches"
		{
			"aux01"
			{
				"buildid"		"17100001"
				"timeupdated"		"1738000000"
			}
			"public"
			{
				"buildid"		"17264843"
				"timeupdated"		"1738866735"
			}
			"staging"
			{
				"buildid"		"17300000"
			}
		}
	}
}
"""

MANIFEST = """\
"AppState"
{
	"appid"		"258550"
	"Universe"		"1"
	"name"		"Rust Dedicated Server"
	"StateFlags"		"4"
	"installdir"		"rust_dedicated"
	"buildid"		"17123456"
	"LastOwner"		"0"
}
"""


def write_script(path: Path, body: str) -> Path:
    """Writes an executable Python script run by the current interpreter."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def root_dir(tmp_path: Path) -> Path:
    root = tmp_path / "root"
    root.mkdir()
    return root


@pytest.fixture
def resources(root_dir: Path) -> Resources:
    return Resources(
        root_dir=root_dir,
        executable_name="RustDedicated",
        manifest_relpath=Path("steamapps") / f"appmanifest_{APP_ID}.acf",
        app_id=APP_ID,
        cache_relpath=Path("steamcmd") / "appcache" / "appinfo.vdf",
        search_root=root_dir,
    )


@pytest.fixture
def fake_steamcmd_script(root_dir: Path) -> Path:
    """A stand-in steamcmd.sh that prints an app_info_print blob."""
    return write_script(
        root_dir / "steamcmd" / "steamcmd.sh",
        f"print({APP_INFO_PRINT!r})\n",
    )


@pytest.fixture
def fake_tracer(tmp_path: Path) -> Callable[..., Dependency]:
    """
    Builds a stand-in for strace. It writes `trace` to the `-o` file, creates
    the files in `create` (with optional contents) and exits with `exit_code`.
    """
    def build(
        trace: str = "",
        create: Iterable[Path] = (),
        contents: Optional[dict] = None,
        exit_code: int = 0,
        raw: Optional[bytes] = None,
    ) -> Dependency:
        payload = raw if raw is not None else trace.encode("utf-8")
        files = {str(p): "" for p in create}
        files.update({str(p): text for p, text in (contents or {}).items()})
        script = write_script(
            tmp_path / "bin" / "fake-strace",
            "import sys\n"
            "from pathlib import Path\n"
            "args = sys.argv[1:]\n"
            "Path(args[args.index('-o') + 1]).write_bytes(" + repr(payload) + ")\n"
            "for name, text in " + repr(files) + ".items():\n"
            "    Path(name).parent.mkdir(parents=True, exist_ok=True)\n"
            "    Path(name).write_text(text)\n"
            "sys.exit(" + str(exit_code) + ")\n",
        )
        return Dependency(script)

    return build


@pytest.fixture
def app_info_print() -> str:
    return APP_INFO_PRINT


@pytest.fixture
def manifest_text() -> str:
    return MANIFEST


@pytest.fixture
def script_writer() -> Callable[[Path, str], Path]:
    return write_script
