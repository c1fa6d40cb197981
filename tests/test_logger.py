"""
Tests for loguru setup in core.logger.
"""

from loguru import logger

from pixelmint.core.config import Settings
from pixelmint.core.logger import get_log_path, setup_logging


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_file_logging_creates_log(self, tmp_path):
        """Test that enabling file logging writes under data_dir/logs."""
        # Arrange
        settings = Settings(_env_file=None, data_dir=tmp_path, log_to_file=True, log_level="debug")

        # Act
        setup_logging(settings)
        logger.info("hello from test")
        logger.complete()

        # Assert
        log_file = get_log_path(settings) / "pixelmint.log"
        try:
            assert log_file.exists()
            assert "hello from test" in log_file.read_text(encoding="utf-8")
        finally:
            # Closing the sink compresses the file
            logger.remove()

    def test_console_only(self, tmp_path):
        """Test that the log directory is untouched without file logging."""
        # Arrange
        settings = Settings(_env_file=None, data_dir=tmp_path)

        # Act
        setup_logging(settings)
        logger.remove()

        # Assert
        assert not get_log_path(settings).exists()
