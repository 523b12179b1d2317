# tests/conftest.py
import pytest

from ftudp.config import ClientConfig, ServerConfig
from ftudp.ftp_server import FTPServer

from helpers import FakeEndpoint

USERS = {"alice": "secret", "bob": "hunter2"}


@pytest.fixture
def server_config(tmp_path):
    return ServerConfig(
        host="127.0.0.1",
        port=0,
        root=str(tmp_path / "root"),
        users=dict(USERS),
        pace_ms=0,
        transfer_idle=0.3,
    )


@pytest.fixture
def client_config():
    return ClientConfig(timeout_ms=500, pace_ms=0)


@pytest.fixture
def endpoint():
    return FakeEndpoint()


@pytest.fixture
def server(server_config, endpoint):
    return FTPServer(server_config, endpoint=endpoint)
