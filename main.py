"""
Entry point for the notedrift analytics CLI.

Run with:
    python main.py drift rebuild
    notedrift --help
"""
from src.cli.main import run

if __name__ == "__main__":
    run()
