"""
Unit tests for log setup (pg_backup.configure_logging).
"""

import re

from pg_backup import configure_logging, logger


LINE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2} - INFO - backup started$')


class TestConfigureLogging:

    def test_lines_appended_to_file_and_stdout(self, tmp_path, capsys):
        log_file = tmp_path / 'backup.log'
        log_file.write_text('previous run\n')

        configure_logging(log_file)
        logger.info('backup started')

        lines = log_file.read_text().splitlines()
        assert lines[0] == 'previous run'
        assert LINE_PATTERN.match(lines[1])
        assert 'backup started' in capsys.readouterr().out

    def test_unwritable_log_file_is_not_fatal(self, tmp_path, capsys):
        log_file = tmp_path / 'missing-dir' / 'backup.log'

        configure_logging(log_file)
        logger.info('backup started')

        out = capsys.readouterr().out
        assert 'Cannot write log file' in out
        assert 'backup started' in out
        assert not log_file.exists()

    def test_reconfiguring_replaces_handlers(self, tmp_path):
        first = tmp_path / 'first.log'
        second = tmp_path / 'second.log'

        configure_logging(first)
        configure_logging(second)
        logger.info('backup started')

        assert first.read_text() == ''
        assert 'backup started' in second.read_text()
        assert len(logger.handlers) == 2
