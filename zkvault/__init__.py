"""zkvault - zero-knowledge secret vault core."""

__version__ = "1.0.0"
__all__ = ["__version__"]


def check_dependencies():
    """Halt with a clear message if a critical dependency is missing."""
    import importlib.util
    import sys

    required = {
        "cryptography": "cryptography",
        "pydantic": "pydantic",
        "orjson": "orjson",
        "platformdirs": "platformdirs",
    }
    missing = [dist for mod, dist in required.items() if importlib.util.find_spec(mod) is None]
    if missing:
        print("ERROR: Missing dependencies ->", ", ".join(missing), file=sys.stderr)
        print("Install with:  pip install " + " ".join(missing), file=sys.stderr)
        sys.exit(1)
