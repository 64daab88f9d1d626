import logging

import pytest

from deploy_pipeline.logging_utils import _TokenRedactingFilter, setup_logging


@pytest.fixture
def root_handler():
    root = logging.getLogger()
    handler = logging.StreamHandler()
    root.addHandler(handler)
    yield handler
    root.removeHandler(handler)


def test_setup_logging_adds_redacting_filter_once(root_handler) -> None:  # noqa: ANN001
    setup_logging()
    setup_logging(1)

    filters = [f for f in root_handler.filters if isinstance(f, _TokenRedactingFilter)]
    assert len(filters) == 1


def test_tokens_are_masked() -> None:
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "token=%s", ("ya29.abcdef-123",), None)

    _TokenRedactingFilter().filter(record)

    assert record.getMessage() == "token=***"
