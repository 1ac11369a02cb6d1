"""Shared fixtures."""
import pytest

from docpublisher.config import ConfigResolver

from .fakes import SCENARIO_RECORD, SERVICE_PRINCIPAL_RECORD, FakeGraph


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def resolver():
    return ConfigResolver(environ={})


@pytest.fixture
def oauth_connection(resolver):
    return resolver.resolve(SCENARIO_RECORD)


@pytest.fixture
def sp_connection(resolver):
    return resolver.resolve(SERVICE_PRINCIPAL_RECORD)
