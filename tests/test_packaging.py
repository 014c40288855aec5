import re
from pathlib import Path

PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"


def test_requires_python_floor():
    match = re.search(r'^requires-python\s*=\s*">=(\d+)\.(\d+)"', PYPROJECT.read_text(), re.MULTILINE)
    assert match is not None
    assert (int(match.group(1)), int(match.group(2))) >= (3, 10)
