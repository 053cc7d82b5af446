"""Allow running as ``python -m ufw_blocklist``."""

import sys

from .cli import main

sys.exit(main())
