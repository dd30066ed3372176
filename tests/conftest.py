"""Shared fixtures: every test runs against its own home and project dir."""
import base64
import pytest

from secenvs.conf import ENCODED_IDENTITY_ENV, FILE_ENV, HOME_ENV, SecenvConfig
from secenvs.crypto import generate_identity, identity_to_public_key
from secenvs.identity import create_identity


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Point SECENV_HOME at a temp dir and run from a temp project dir."""
    home = tmp_path / "home"
    project = tmp_path / "project"
    home.mkdir()
    project.mkdir()
    monkeypatch.setenv(HOME_ENV, str(home))
    monkeypatch.delenv(FILE_ENV, raising=False)
    monkeypatch.delenv(ENCODED_IDENTITY_ENV, raising=False)
    monkeypatch.chdir(project)
    return tmp_path


@pytest.fixture
def config(isolated_env):
    return SecenvConfig(home=isolated_env / "home")


@pytest.fixture
def fast_lock_config(isolated_env):
    """Config that gives up on a held lock almost immediately."""
    return SecenvConfig(
        home=isolated_env / "home",
        lock_retries=3,
        lock_initial_delay=0.001,
        lock_max_jitter=0.0,
        lock_max_delay=0.005,
    )


@pytest.fixture
def identity(config):
    """Create the local identity and return it."""
    value, _, _ = create_identity(config)
    return value


@pytest.fixture
def public_key(identity):
    return identity_to_public_key(identity)


@pytest.fixture
def env_file(isolated_env):
    return isolated_env / "project" / ".secenvs"


@pytest.fixture
def other_identity():
    """A second identity that is not stored on disk."""
    return generate_identity()


def encode_identity(identity: str) -> str:
    return base64.b64encode(identity.encode("utf-8")).decode("ascii")
