"""Tests for CLI module."""

from unittest.mock import AsyncMock, Mock, patch

import pytest
from click.testing import CliRunner

from screenshare import __version__
from screenshare.cli import main
from screenshare.errors import RelayUnreachableError


BROWSER_OFFER = (
    "v=0\r\n"
    "o=- 1 1 IN IP4 0.0.0.0\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "m=video 9 UDP/TLS/RTP/SAVPF 96 97 102 103\r\n"
    "a=rtpmap:96 VP8/90000\r\n"
    "a=rtpmap:97 rtx/90000\r\n"
    "a=fmtp:97 apt=96\r\n"
    "a=rtpmap:102 H264/90000\r\n"
    "a=fmtp:102 packetization-mode=1;profile-level-id=42e01f\r\n"
    "a=rtpmap:103 rtx/90000\r\n"
    "a=fmtp:103 apt=102\r\n"
)

TURN_ARGS = ["--turn", "turn.example.com:3478", "--turn-user", "me", "--turn-pwd", "qwerty"]


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def no_config(tmp_path):
    """Point the CLI at a config file that does not exist."""
    return ["--config", str(tmp_path / "missing.yaml")]


def fake_session(failure=None, start_error=None):
    """ShareSession stand-in."""
    session = Mock()
    session.start = AsyncMock(side_effect=start_error)
    session.wait_finished = AsyncMock(return_value=failure)
    session.stop = AsyncMock()
    return session


class TestCLIHelp:
    """Test CLI help output."""

    def test_cli_help(self, runner):
        """screenshare --help lists the commands."""
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "run" in result.output
        assert "filter-sdp" in result.output

    def test_run_help(self, runner):
        """screenshare run --help lists the TURN options."""
        result = runner.invoke(main, ["run", "--help"])

        assert result.exit_code == 0
        assert "--turn-user" in result.output
        assert "--bitrate" in result.output


class TestVersionCommand:
    """Test version command."""

    def test_version(self, runner, no_config):
        """screenshare version prints the version."""
        result = runner.invoke(main, no_config + ["version"])

        assert result.exit_code == 0
        assert f"screenshare version {__version__}" in result.output


class TestFilterSdpCommand:
    """Test filter-sdp command."""

    def test_filters_file(self, runner, no_config, tmp_path):
        """VP8 and its rtx are removed from a file."""
        source = tmp_path / "offer.sdp"
        source.write_bytes(BROWSER_OFFER.encode())

        result = runner.invoke(main, no_config + ["filter-sdp", str(source)])

        assert result.exit_code == 0
        assert "m=video 9 UDP/TLS/RTP/SAVPF 102 103" in result.output
        assert "VP8" not in result.output
        assert "apt=96" not in result.output
        assert "a=fmtp:103 apt=102" in result.output

    def test_filters_stdin(self, runner, no_config):
        """A dash reads the SDP from stdin."""
        result = runner.invoke(main, no_config + ["filter-sdp", "-"], input=BROWSER_OFFER)

        assert result.exit_code == 0
        assert "a=rtpmap:102 H264/90000" in result.output
        assert "a=rtpmap:96" not in result.output

    def test_list_codecs(self, runner, no_config):
        """--list shows the remaining codecs."""
        result = runner.invoke(main, no_config + ["filter-sdp", "--list", "-"], input=BROWSER_OFFER)

        assert result.exit_code == 0
        assert "H264" in result.output
        assert "rtx" in result.output
        assert "VP8" not in result.output

    def test_list_without_codecs(self, runner, no_config):
        """--list says so when nothing is left."""
        vp8_only = "v=0\r\nm=video 9 RTP/AVP 96\r\na=rtpmap:96 VP8/90000\r\n"

        result = runner.invoke(main, no_config + ["filter-sdp", "--list", "-"], input=vp8_only)

        assert result.exit_code == 0
        assert "No codecs left." in result.output

    def test_unknown_policy_rejected(self, runner, no_config):
        """Only named policies are accepted."""
        result = runner.invoke(
            main, no_config + ["filter-sdp", "--policy", "vp8-only", "-"], input=BROWSER_OFFER
        )

        assert result.exit_code != 0


class TestRunCommand:
    """Test run command."""

    def test_missing_turn_exits_with_error(self, runner, no_config):
        """No TURN server means no session."""
        result = runner.invoke(main, no_config + ["run"])

        assert result.exit_code == 1
        assert "TURN server" in result.output

    def test_invalid_height_exits_with_error(self, runner, no_config):
        """Non-positive capture settings are rejected."""
        result = runner.invoke(main, no_config + ["run"] + TURN_ARGS + ["--height", "0"])

        assert result.exit_code == 1
        assert "height" in result.output

    def test_run_builds_config_from_options(self, runner, no_config):
        """Options end up in the session config."""
        session = fake_session()
        with patch("screenshare.session.ShareSession", return_value=session) as session_class:
            result = runner.invoke(
                main, no_config + ["run"] + TURN_ARGS + ["--height", "720", "--fps", "10"]
            )

        assert result.exit_code == 0
        config = session_class.call_args[0][0]
        assert config.turn.url == "turn:turn.example.com:3478"
        assert config.turn.username == "me"
        assert config.capture.height == 720
        assert config.capture.frame_rate == 10
        session.start.assert_called_once()
        session.stop.assert_called_once()

    def test_run_reports_failure(self, runner, no_config):
        """A failed session exits with its error."""
        failure = RelayUnreachableError("Failed to gather relay candidates")
        session = fake_session(failure=failure)
        with patch("screenshare.session.ShareSession", return_value=session):
            result = runner.invoke(main, no_config + ["run"] + TURN_ARGS)

        assert result.exit_code == 1
        assert "Failed to gather relay candidates" in result.output

    def test_run_start_error(self, runner, no_config):
        """Errors raised by start exit with status 1."""
        session = fake_session(start_error=RelayUnreachableError("relay down"))
        with patch("screenshare.session.ShareSession", return_value=session):
            result = runner.invoke(main, no_config + ["run"] + TURN_ARGS)

        assert result.exit_code == 1
        assert "relay down" in result.output
        session.stop.assert_called_once()

    def test_run_interrupted(self, runner, no_config):
        """Ctrl+C stops the session cleanly."""
        session = fake_session()
        session.wait_finished = AsyncMock(side_effect=KeyboardInterrupt)
        with patch("screenshare.session.ShareSession", return_value=session):
            result = runner.invoke(main, no_config + ["run"] + TURN_ARGS)

        assert result.exit_code == 0
        assert "Stopped" in result.output

    def test_config_file_supplies_turn(self, runner, tmp_path):
        """TURN settings can come from the config file."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "turn:\n"
            "  url: turn.example.com:3478\n"
            "  username: me\n"
            "  credential: qwerty\n"
        )
        session = fake_session()
        with patch("screenshare.session.ShareSession", return_value=session) as session_class:
            result = runner.invoke(main, ["--config", str(config_file), "run"])

        assert result.exit_code == 0
        assert session_class.call_args[0][0].turn.credential == "qwerty"
