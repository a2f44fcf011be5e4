"""
rewriteflow package entry point.

Allows running rewriteflow as a module:
    python -m rewriteflow
"""

from rewriteflow.cli import main

if __name__ == "__main__":
    main()
