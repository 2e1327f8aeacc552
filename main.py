"""
Lead CRM Reminders — Entry Point.

Single entry point: `python main.py` starts the reminder engine.
"""

import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from src.app import main

if __name__ == "__main__":
    main()
