import logging

from signal_loader.jobs.utils.logging_config import LOG_FILE_NAME, setup_script_logging, truncate_for_log


def test_console_only():
    logger = setup_script_logging('loader_test_console', 'DEBUG')

    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 1


def test_file_logging(tmp_path):
    log_dir = tmp_path / 'logs'
    logger = setup_script_logging('loader_test_file', logging.INFO, log_dir)
    logger.info('Starting job execution | job=job_a')
    for handler in logger.handlers:
        handler.flush()

    content = (log_dir / LOG_FILE_NAME).read_text(encoding='utf-8')
    assert ' - loader_test_file - INFO - Starting job execution | job=job_a' in content


def test_repeated_setup_does_not_duplicate_handlers(tmp_path):
    setup_script_logging('loader_test_repeat', 'INFO', tmp_path)
    logger = setup_script_logging('loader_test_repeat', 'INFO', tmp_path)

    assert len(logger.handlers) == 2
    for handler in logger.handlers:
        handler.close()


def test_truncate_for_log():
    assert truncate_for_log(None) == ''
    assert truncate_for_log('short') == 'short'
    assert truncate_for_log('x' * 250, limit=10) == 'xxxxxxxxxx... (truncated)'
