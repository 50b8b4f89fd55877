"""Main entry point for running jido as a module.

Usage:
    python -m jido --help
    python -m jido do PROJ-123 --iterations 3
    python -m jido check src/app.py src/app.test.ts
"""

from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app()
