import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = REPO_ROOT / "src"
TESTS_ROOT = REPO_ROOT / "tests"

for path in (REPO_ROOT, SRC_ROOT, TESTS_ROOT):
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

from fake_firestore import FakeFirestore  # noqa: E402


@pytest.fixture
def store():
    return FakeFirestore()
