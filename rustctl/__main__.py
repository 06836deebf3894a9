import sys

from rustctl.main import main

sys.exit(main())
