"""
Unit tests for the audit log.
"""

import os
import re

import pytest
from unittest.mock import patch

from datasync.utils.sync_log import SEPARATOR, SyncLog, SyncLogError, strip_illegals

LINE = re.compile(r"^\d{2}/\d{2}/\d{4} \d{2}:\d{2}:\d{2} : (.*)$")


def messages(path):
    """Message part of every log line."""
    return [LINE.match(line).group(1) for line in path.read_text(encoding="utf-8").splitlines()]


class TestSyncLog:
    """Test the per-user audit log."""

    def test_path(self, tmp_path):
        log = SyncLog(str(tmp_path), user_id="DOMAIN\\j.smith")

        assert log.path == tmp_path / "DataSync_DOMAIN_j_smith.log"

    def test_strip_illegals(self):
        assert strip_illegals("a/b:c*d.e") == "a_b_c_d_e"

    def test_write_lines(self, sync_log):
        """Test timestamped lines and banners."""
        sync_log.open()
        sync_log.write("Synchronising GIS.Parcels")
        sync_log.banner("Process complete!")
        sync_log.close()

        assert messages(sync_log.path) == [
            "Synchronising GIS.Parcels",
            SEPARATOR,
            "Process complete!",
            SEPARATOR,
        ]

    def test_appends_across_runs(self, sync_log):
        for line in ("first", "second"):
            sync_log.open()
            sync_log.write(line)
            sync_log.close()

        assert messages(sync_log.path) == ["first", "second"]

    def test_write_while_closed_is_dropped(self, sync_log):
        sync_log.write("nobody listening")

        assert not sync_log.path.exists()

    def test_fallback_user(self, tmp_path):
        """Test the Temp user when no OS user is known."""
        with patch('datasync.utils.sync_log.getpass.getuser', side_effect=KeyError("uid")):
            log = SyncLog(str(tmp_path))

        log.open()
        log.close()

        assert log.path.name == "DataSync_Temp.log"
        assert messages(log.path) == ["User ID not found. User ID used will be 'Temp'."]

    def test_archive_previous(self, sync_log):
        """Test that the previous log is renamed with its modification time."""
        sync_log.open()
        sync_log.write("old run")
        sync_log.close()
        os.utime(sync_log.path, (1700000000, 1700000000))

        sync_log.open(archive_previous=True)
        sync_log.write("new run")
        sync_log.close()

        archived = list(sync_log.log_dir.glob("DataSync_tester_*.log"))
        assert len(archived) == 1
        assert re.match(r"DataSync_tester_\d{8}_\d{6}\.log$", archived[0].name)
        assert messages(archived[0]) == ["old run"]
        assert messages(sync_log.path) == ["new run"]

    def test_archive_without_previous_log(self, sync_log):
        sync_log.open(archive_previous=True)
        sync_log.close()

        assert list(sync_log.log_dir.glob("DataSync_tester_*.log")) == []

    def test_archive_failure(self, sync_log):
        sync_log.open()
        sync_log.close()

        with patch('datasync.utils.sync_log.os.replace', side_effect=PermissionError("in use")):
            with pytest.raises(SyncLogError, match="Cannot rename log file"):
                sync_log.open(archive_previous=True)

    def test_directory_failure(self, tmp_path):
        """Test that an unusable log directory raises SyncLogError."""
        blocker = tmp_path / "file"
        blocker.write_text("", encoding="utf-8")
        log = SyncLog(str(blocker / "logs"), user_id="tester")

        with pytest.raises(SyncLogError, match="Cannot create directory"):
            log.open()

    def test_show(self, sync_log, no_browser):
        assert not sync_log.show()
        no_browser.assert_not_called()

        sync_log.open()
        sync_log.close()

        assert sync_log.show()
        no_browser.assert_called_once_with(sync_log.path.resolve().as_uri())

    def test_unopenable_file(self, sync_log):
        """Test that a log path that cannot be opened raises SyncLogError."""
        sync_log.path.mkdir(parents=True)

        with pytest.raises(SyncLogError, match="Cannot open log file"):
            sync_log.open()

        sync_log.write("nobody listening")

    def test_archive_stat_failure(self, sync_log):
        sync_log.open()
        sync_log.close()

        with patch.object(type(sync_log.path), "stat", side_effect=PermissionError("denied")):
            with pytest.raises(SyncLogError, match="Cannot rename log file"):
                sync_log.archive()

    def test_shared_file_written_once(self, tmp_path):
        """Test that two open logs for the same user do not duplicate lines."""
        first = SyncLog(str(tmp_path), user_id="tester")
        second = SyncLog(str(tmp_path), user_id="tester")
        first.open()
        second.open()

        first.write("from first")
        second.write("from second")
        first.close()
        second.close()

        assert messages(first.path) == ["from first", "from second"]
