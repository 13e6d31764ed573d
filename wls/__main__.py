import sys

from .core.server_core import main

sys.exit(main())
