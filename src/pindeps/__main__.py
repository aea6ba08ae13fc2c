"""Allow ``python -m pindeps``."""

import sys

from pindeps.cli import main

sys.exit(main())
