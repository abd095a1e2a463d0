import logging

from covid_spatial.utils.logger import PROCESS, SUCCESS, TEST, CSFormatter, CSLogger


def make_record(level, message='Week 3: 4 bins defined'):
    return logging.LogRecord('covid_spatial', level, __file__, 1, message, None, None)


def test_custom_levels_have_names():
    assert logging.INFO < PROCESS < SUCCESS < TEST < logging.WARNING
    assert logging.getLevelName(SUCCESS) == 'SUCCESS'


def test_plain_format():
    line = CSFormatter(use_color=False).format(make_record(PROCESS))
    assert line.endswith('[PROCESS] Week 3: 4 bins defined')
    assert '\033[' not in line


def test_colored_format():
    line = CSFormatter(use_color=True).format(make_record(TEST))
    assert line.startswith(CSFormatter.COLORS['TEST'])
    assert line.endswith(CSFormatter.RESET)


def test_unknown_level_shown_as_info():
    line = CSFormatter(use_color=False).format(make_record(15))
    assert '[INFO]' in line


def test_set_verbose_toggles_debug():
    log = CSLogger('covid_spatial.test_verbose')
    log.set_verbose(True)
    assert log.logger.isEnabledFor(logging.DEBUG)
    log.set_verbose(False)
    assert not log.logger.isEnabledFor(logging.DEBUG)
    assert log.logger.isEnabledFor(SUCCESS)
