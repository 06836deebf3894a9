"""
Parsing of the build identifier out of SteamCMD's curious key/value text format.

Both the app manifest (`steamapps/appmanifest_<appid>.acf`) and the output of
`steamcmd +app_info_print <appid>` use quoted keys and values on one line with
blocks nested in bare braces, e.g.::

    "branches"
    {
        "public"
        {
            "buildid"       "17264843"
            "timeupdated"   "1738866735"
        }
    }

The format is not JSON (nor anything else a stock parser accepts), so it is
scanned line by line.
"""
import re
import logging
from pathlib import Path
from typing import Iterable, List, Optional

log = logging.getLogger(__name__)

_DIGITS = re.compile(r"\d+")


def _public_buildid_line(lines: List[str]) -> Optional[str]:
    """Returns the first `buildid` line following a `branches` and then a `public` marker."""
    seen_branches = False
    seen_public = False

    for trimmed in lines:
        if "branches" in trimmed:
            seen_branches = True
        elif "public" in trimmed:
            seen_public = seen_branches
        elif "buildid" in trimmed and seen_public:
            return trimmed
    return None


def _buildid_line(lines: Iterable[str]) -> Optional[str]:
    """
    Returns the trimmed `buildid` line of the public branch.

    The public branch wins over any `buildid` line elsewhere in the text. Without
    one, the first `buildid` line wins. `public` only counts after `branches`.
    """
    trimmed = [line.strip() for line in lines]
    public = _public_buildid_line(trimmed)
    if public is not None:
        return public
    return next((line for line in trimmed if "buildid" in line), None)


def parse_buildid(text: str) -> Optional[int]:
    """
    From a SteamCMD response or manifest buffer, get the build ID of the public branch.

    :param text: The raw text; may be truncated or malformed.
    :return: The build ID, or None if there is none to be found.
    """
    line = _buildid_line(text.splitlines())
    if line is None:
        return None
    # Skip the key itself; the value is the first run of digits after it.
    _, _, value = line.partition("buildid")
    match = _DIGITS.search(value)
    if not match:
        return None
    return int(match.group(0))


def read_buildid_from_file(path: Path) -> Optional[int]:
    """Reads a manifest file and parses its build ID. Missing or unreadable files yield None."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        log.debug(f"Cannot read manifest '{path}': {e}")
        return None
    return parse_buildid(text)
