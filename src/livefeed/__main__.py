"""
Live-Feed Service Entry Point

Allows running the service via:
    python -m src.livefeed [args]
"""

from .orchestrator import main

if __name__ == "__main__":
    main()
