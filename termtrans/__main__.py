"""
Entry point for running termtrans as a module.

Usage:
    python -m termtrans --help
    python -m termtrans --workbook ./sheets replace "Buy a Red Potion" -s en-US -t ko-KR
    python -m termtrans --workbook ./sheets batch --source ko-KR --target en-US
"""
from .cli import app


if __name__ == "__main__":
    app()
