"""Allow running as ``python -m zkvault``."""

from __future__ import annotations

import sys

from zkvault.main import main

sys.exit(main())
