"""Allow ``python -m pma_up``."""

import sys

from pma_up.cli import main

sys.exit(main())
