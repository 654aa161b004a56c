"""
JSON helper for Python lockfile metadata.

Reads ``{"function": ..., "args": [...]}`` on stdin and writes
``{"result": ...}`` or ``{"error": ..., "error_class": ...}`` on stdout.
"""

import hashlib
import json
import os
import sys

import toml

POETRY_RELEVANT_KEYS = ["dependencies", "group", "source", "extras"]
POETRY_LEGACY_KEYS = ["dependencies", "dev-dependencies", "source", "extras"]


def get_pyproject_hash(directory):
    """content-hash as poetry writes it into poetry.lock."""
    with open(os.path.join(directory, "pyproject.toml"), encoding="utf-8") as f:
        pyproject = toml.load(f)

    poetry = pyproject.get("tool", {}).get("poetry", {})
    keys = POETRY_LEGACY_KEYS if "dev-dependencies" in poetry else POETRY_RELEVANT_KEYS
    relevant = {key: poetry.get(key) for key in keys}
    return hashlib.sha256(json.dumps(relevant, sort_keys=True).encode()).hexdigest()


def get_pipfile_hash(directory):
    """_meta.hash.sha256 as pipenv writes it into Pipfile.lock."""
    with open(os.path.join(directory, "Pipfile"), encoding="utf-8") as f:
        pipfile = toml.load(f)

    data = {
        "_meta": {
            "sources": pipfile.get("source", []),
            "requires": pipfile.get("requires", {}),
        },
        "default": pipfile.get("packages", {}),
        "develop": pipfile.get("dev-packages", {}),
    }
    content = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(content.encode()).hexdigest()


FUNCTIONS = {
    "get_pyproject_hash": get_pyproject_hash,
    "get_pipfile_hash": get_pipfile_hash,
}


def main():
    request = json.loads(sys.stdin.read())
    function = FUNCTIONS.get(request.get("function"))
    if function is None:
        print(json.dumps({
            "error": f"Unknown function {request.get('function')}",
            "error_class": "NotImplementedError",
        }))
        return 1
    try:
        result = function(*request.get("args", []))
    except (OSError, ValueError, toml.TomlDecodeError) as e:
        print(json.dumps({"error": str(e), "error_class": type(e).__name__}))
        return 1
    print(json.dumps({"result": result}))
    return 0


if __name__ == "__main__":
    sys.exit(main())
