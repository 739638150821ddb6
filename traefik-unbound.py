#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/traefik_unbound`. This wrapper allows running
`./traefik-unbound.py` straight from a checkout, e.g. from a systemd unit.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from traefik_unbound.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
