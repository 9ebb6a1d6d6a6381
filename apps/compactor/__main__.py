"""
Compactor Module Entry Point

Allows execution via: python -m apps.compactor
"""

import asyncio

from apps.compactor.worker import main

if __name__ == "__main__":
    asyncio.run(main())
