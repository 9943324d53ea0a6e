"""
Tests for the worker entry point, run in-process.

Tests cover:
- Exit codes for bad arguments, connect failures and bad config
- Bad arguments reported ahead of a bad config
- Serving requests until the host closes the channel
"""

import os
import sys
import threading

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from tripleslash.core.channel import HAS_UNIX_SOCKETS, Channel, ConnectResult
from tripleslash.core.config import CONFIG_ENV_VAR
from tripleslash.core.framing import read_frame, write_frame
from tripleslash.core.message import (
    DEFAULT_REGISTRY,
    ErrorMessage,
    MethodSignatureRequest,
    MethodSignatureResponse,
)
from tripleslash.worker import (
    EXIT_BAD_ARGUMENTS,
    EXIT_CONNECT_FAILED,
    EXIT_LOOP_FAILED,
    EXIT_OK,
    main,
)


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Point the worker at a config file with the given contents."""

    def write(contents):
        path = tmp_path / "config.toml"
        path.write_text(contents, encoding="utf-8")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        return path

    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    return write


class TestExitCodes:
    """Test early exits."""

    def test_no_arguments(self, config_file, capsys):
        assert main([]) == EXIT_BAD_ARGUMENTS
        assert "Expected exactly one argument" in capsys.readouterr().err

    def test_too_many_arguments(self, config_file):
        assert main(["qsts-a", "qsts-b"]) == EXIT_BAD_ARGUMENTS

    def test_exit_code_values(self):
        assert (EXIT_OK, EXIT_BAD_ARGUMENTS, EXIT_CONNECT_FAILED, EXIT_LOOP_FAILED) == (0, -1, -2, -3)

    @pytest.mark.skipif(not HAS_UNIX_SOCKETS, reason="requires Unix domain sockets")
    def test_connect_failure(self, config_file, capsys):
        config_file("[Parser]\nparser-timeout = 100\n")

        assert main(["qsts-nobody-listens"]) == EXIT_CONNECT_FAILED
        assert "qsts-nobody-listens" in capsys.readouterr().err

    def test_bad_arguments_win_over_bad_config(self, config_file):
        config_file("[Parser]\nparser-timeout = -5\n")

        assert main([]) == EXIT_BAD_ARGUMENTS
        assert main(["qsts-a", "qsts-b"]) == EXIT_BAD_ARGUMENTS

    def test_invalid_config(self, config_file, capsys):
        config_file("[Parser]\nparser-timeout = -5\n")

        assert main(["qsts-anything"]) == EXIT_LOOP_FAILED
        assert "FATAL" in capsys.readouterr().err


@pytest.mark.skipif(not HAS_UNIX_SOCKETS, reason="requires Unix domain sockets")
class TestServing:
    """Test a worker talking to a real channel."""

    def test_serves_until_channel_closes(self, config_file):
        host = Channel.create()
        results = []
        thread = threading.Thread(
            target=lambda: results.append(main([host.identifier])), daemon=True
        )
        thread.start()
        try:
            assert host.accept_connection(timeout=5.0) is ConnectResult.CONNECTED

            write_frame(host, DEFAULT_REGISTRY.encode(
                MethodSignatureRequest("operation Foo (a : Int) : Unit { }")
            ))
            response = DEFAULT_REGISTRY.decode(read_frame(host))
            assert response == MethodSignatureResponse(
                name="Foo", parameter_names=["a"], type_parameter_names=[], has_return_type=False
            )

            write_frame(host, DEFAULT_REGISTRY.encode(MethodSignatureRequest("let x = 1;")))
            error = DEFAULT_REGISTRY.decode(read_frame(host))
            assert isinstance(error, ErrorMessage)
            assert error.error_type == "SignatureSyntaxError"
        finally:
            host.close()

        thread.join(timeout=5.0)
        assert not thread.is_alive()
        assert results == [EXIT_OK]
