import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import lazyissues as li  # noqa: E402


@pytest.fixture
def write_config(tmp_path):
    """Write KDL text to a config file under tmp_path and return its path."""
    def _write(text: str, name: str = 'config.kdl'):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding='utf-8')
        return path
    return _write


@pytest.fixture
def make_item():
    def _make(number: int, title: str = None, *, kind: str = 'issue', closed: bool = False,
              labels=None, created_at: str = '2024-01-02T03:04:05Z', author: str = 'octocat'):
        return li.ListItem(
            kind=kind,
            number=number,
            title=title or f'Item {number}',
            closed=closed,
            author=author,
            created_at=created_at,
            labels=list(labels or []),
        )
    return _make
