"""Run with ``python -m standby_verifier``."""

import sys

from standby_verifier.cli import main

sys.exit(main())
