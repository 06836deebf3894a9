import sys
import logging
import setproctitle

# Basic console logger for messages BEFORE full setup is complete.
# This logger will be replaced by the full setup later.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [console] - %(message)s',
    stream=sys.stdout
)
log = logging.getLogger("console")

import rustctl.local.console as console
from rustctl.errors import ExitCode, RustctlError
from rustctl.log.setup import setup_logging


def main() -> int:
    """The main entry point for the console application."""
    setup_logging(logging.INFO)

    if len(sys.argv) < 2:
        console.print_help()
        return ExitCode.FAILURE

    command, args = sys.argv[1].lower(), sys.argv[2:]
    setproctitle.setproctitle(f"rustctl - {command}")
    try:
        return int(console.execute_command(command, args))
    except RustctlError as e:
        log.critical(f"{type(e).__name__}: {e}")
        return int(e.exit_code)
    except KeyboardInterrupt:
        log.warning("Interrupted by user.")
        return ExitCode.FAILURE


if __name__ == "__main__":
    sys.exit(main())
