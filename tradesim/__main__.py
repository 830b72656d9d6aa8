"""Entry point for running tradesim as a module.

Usage:
    python -m tradesim --mode optimize --strategy sma_cross --grid fast_period=5:20:5 --grid slow_period=50,100
"""

from .cli import main

if __name__ == "__main__":
    exit(main())
