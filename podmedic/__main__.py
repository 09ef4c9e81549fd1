"""Entry point for `python -m podmedic`.

Usage:
    python -m podmedic
    uv run python -m podmedic
"""

from __future__ import annotations

import asyncio

from podmedic.app import main

asyncio.run(main())
