import logging
import sys

# Step-progress levels between INFO (20) and WARNING (30)
PROCESS = 25
SUCCESS = 26
TEST = 27

for _level, _name in ((PROCESS, 'PROCESS'), (SUCCESS, 'SUCCESS'), (TEST, 'TEST')):
    logging.addLevelName(_level, _name)


class CSFormatter(logging.Formatter):
    """Colored ``[HH:MM:SS] [LEVEL] message`` lines for step console output."""

    COLORS = {
        'SUCCESS': '\033[1;32m',  # Green bold
        'WARNING': '\033[1;33m',  # Yellow bold
        'ERROR': '\033[1;31m',    # Red bold
        'INFO': '\033[0;37m',     # White
        'DEBUG': '\033[0;90m',    # Dark gray
        'PROCESS': '\033[0;34m',  # Blue
        'TEST': '\033[1;35m'      # Magenta bold
    }
    RESET = '\033[0m'

    def __init__(self, use_color: bool = True):
        super().__init__(datefmt='%H:%M:%S')
        self.use_color = use_color

    def format(self, record):
        level_name = record.levelname if record.levelname in self.COLORS else 'INFO'
        line = f"[{self.formatTime(record, self.datefmt)}] [{level_name}] {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        if not self.use_color:
            return line
        return f"{self.COLORS[level_name]}{line}{self.RESET}"


class CSLogger:
    """Step logger: standard levels plus PROCESS, SUCCESS and TEST."""

    def __init__(self, name: str = "covid_spatial", level: str = "INFO"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper(), logging.INFO))

        # One handler per named logger, however many steps import it
        if not self.logger.handlers:
            ch = logging.StreamHandler(sys.stdout)
            ch.setLevel(logging.DEBUG)
            ch.setFormatter(CSFormatter(use_color=sys.stdout.isatty()))
            self.logger.addHandler(ch)
            self.logger.propagate = False

    def set_verbose(self, verbose: bool = True):
        """DEBUG output (excluded counties, degenerate bins, solver failures) on or off."""
        self.logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    def info(self, message: str):
        self.logger.info(message)

    def warning(self, message: str):
        self.logger.warning(message)

    def error(self, message: str):
        self.logger.error(message)

    def debug(self, message: str):
        self.logger.debug(message)

    def process(self, message: str):
        self.logger.log(PROCESS, message)

    def success(self, message: str):
        self.logger.log(SUCCESS, message)

    def test(self, message: str):
        self.logger.log(TEST, message)

