"""Tests for call app detection."""

from unittest.mock import MagicMock, patch

import psutil

from voice_agent.call_detector import ProcessCallDetector


def proc(name):
    mock = MagicMock()
    mock.info = {"name": name}
    return mock


class VanishedProcess:
    @property
    def info(self):
        raise psutil.NoSuchProcess(pid=4242)


class TestProcessCallDetector:
    """Tests for ProcessCallDetector."""

    @patch("voice_agent.call_detector.psutil.process_iter")
    def test_matches_running_apps(self, mock_iter):
        """Test names are matched case-insensitively by substring."""
        mock_iter.return_value = [proc("Zoom.us"), proc("bash"), proc("MSTeams"), proc("zoom")]

        detector = ProcessCallDetector(["zoom", "teams", "discord"])
        assert detector.active_call_apps() == ["teams", "zoom"]
        mock_iter.assert_called_once_with(["name"])

    @patch("voice_agent.call_detector.psutil.process_iter")
    def test_no_call_apps(self, mock_iter):
        """Test an empty list when nothing matches."""
        mock_iter.return_value = [proc("python3"), proc(None)]
        assert ProcessCallDetector(["zoom"]).active_call_apps() == []

    @patch("voice_agent.call_detector.psutil.process_iter")
    def test_vanished_process_skipped(self, mock_iter):
        """Test processes that exit mid-scan are ignored."""
        mock_iter.return_value = [VanishedProcess(), proc("discord")]
        assert ProcessCallDetector(["discord"]).active_call_apps() == ["discord"]

    def test_configured_names_normalized(self):
        """Test configured names are lowercased and blanks dropped."""
        assert ProcessCallDetector(["Zoom", "", "WebEx"]).call_apps == ("zoom", "webex")
