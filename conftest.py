"""
Shared pytest fixtures.

The scripts are flat top-level modules; keeping this file at the repository
root puts them on sys.path for the tests.
"""

import pytest


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so moto never talks to a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')
    monkeypatch.delenv('AWS_PROFILE', raising=False)


@pytest.fixture
def no_sleep():
    return lambda seconds: None
