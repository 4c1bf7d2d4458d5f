import pytest

from tests.fixtures.helpers import ALICE, BOB, FakeHomeserver, introduce, make_engine


@pytest.fixture
def server():
    return FakeHomeserver()


@pytest.fixture
def alice(tmp_path, server):
    return make_engine(tmp_path / "alice", server, ALICE, "ALICEDEVICE")


@pytest.fixture
def bob(tmp_path, server):
    return make_engine(tmp_path / "bob", server, BOB, "BOBDEVICE")


@pytest.fixture
def pair(alice, bob):
    """Two engines that have exchanged device announcements"""
    introduce(alice, bob)
    return alice, bob
