"""
Shared fixtures for the possync test suite.
"""

import itertools
import tempfile

import pytest

from possync_sdk.envelope import Envelope
from possync_sdk.state import reset_sync_state


@pytest.fixture(autouse=True)
def fresh_sync_state():
    """Each test starts without process-wide sync state."""
    reset_sync_state()
    yield
    reset_sync_state()


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def make_envelope():
    """Factory for envelopes with unique opIds."""
    counter = itertools.count(1)

    def factory(
        entity_type="item",
        op="create",
        entity_id="I1",
        body=None,
        device_id="D1",
        op_id=None,
    ):
        return Envelope(
            device_id=device_id,
            op_id=op_id or f"op-{next(counter)}",
            sent_at_millis=1_700_000_000_000,
            entity_type=entity_type,
            entity_id=entity_id,
            op=op,
            body=body if body is not None else _default_body(entity_type, op),
        )

    return factory


def _default_body(entity_type, op):
    if (entity_type, op) == ("item", "create"):
        return {"name": "Soap", "stock": 10}
    return {}
