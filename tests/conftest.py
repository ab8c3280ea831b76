"""
Shared fixtures for the coordinator test suite
"""

import sys
from pathlib import Path

import pytest

# Allow running the suite from a plain checkout
sys.path.insert(0, str(Path(__file__).parent.parent))

from coordinator import CommandProcessor, CoordinatorContext, RoundParameters  # noqa: E402
from primitives import Keypair  # noqa: E402


@pytest.fixture
def params():
    return RoundParameters()


@pytest.fixture
def context(params):
    return CoordinatorContext(params)


@pytest.fixture
def processor(context):
    return CommandProcessor(context)


@pytest.fixture
def enroll(context):
    """Register ``n`` fresh voters and return [(state index, keypair)]"""
    def _enroll(n, balance=None):
        voters = []
        for _ in range(n):
            keypair = Keypair()
            voters.append((context.sign_up(keypair.pub_key, balance), keypair))
        return voters
    return _enroll
