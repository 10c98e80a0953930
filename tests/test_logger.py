import logging

from amplicon_tools import setup_logger, log_print
from amplicon_tools.logger import get_logger


def test_log_file_receives_messages(tmp_path):
    log_file = tmp_path / 'pipeline.log'
    setup_logger(log_file=log_file, log_level=logging.INFO)

    log_print('filtering started', level='info')
    get_logger('reads').warning('sample WT1 lost all reads')
    log_print('hidden', level='debug')

    for handler in logging.getLogger('amplicon_tools').handlers:
        handler.flush()
    content = log_file.read_text()
    assert 'INFO - filtering started' in content
    assert 'WARNING - sample WT1 lost all reads' in content
    assert 'hidden' not in content


def test_setup_logger_does_not_duplicate_handlers():
    setup_logger()
    logger = setup_logger()
    assert len(logger.handlers) == 1
