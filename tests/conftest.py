import pytest

from deb2nix.settings import ResolverSettings


@pytest.fixture
def settings():
    return ResolverSettings()
