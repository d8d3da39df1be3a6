"""Test that the project setup is working correctly."""

import xylkit_indexer


def test_version() -> None:
    """Test that version is defined."""
    assert xylkit_indexer.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from xylkit_indexer import chain
    from xylkit_indexer import config
    from xylkit_indexer import indexer
    from xylkit_indexer import service
    from xylkit_indexer import storage

    # Just verify imports work
    assert chain is not None
    assert config is not None
    assert indexer is not None
    assert service is not None
    assert storage is not None
