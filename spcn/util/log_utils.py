import logging


class LogFormatter(logging.Formatter):
    MSG_FORMAT = "%(message)s"
    LEVEL_FORMATS = {
        logging.DEBUG: f"[dim]{MSG_FORMAT}[/]",
        logging.INFO: MSG_FORMAT,
        logging.WARNING: f"[yellow]{MSG_FORMAT}[/]",
        logging.ERROR: f"[red]{MSG_FORMAT}[/]",
        logging.CRITICAL: f"[red bold]{MSG_FORMAT}[/]"
    }

    def format(self, record):
        log_fmt = self.LEVEL_FORMATS.get(record.levelno, self.MSG_FORMAT)
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


class FileFormatter(logging.Formatter):
    MSG_FORMAT = "%(asctime)s [%(levelname)s] - %(message)s"
    FORMAT_CHARS = ['\033[1m', '\033[2m', '\033[4m', '\033[91m', '\033[92m',
                    '\033[93m', '\033[94m', '\033[38;5;5m', '\033[0m']
    MARKUP_TAGS = ['[dim]', '[yellow]', '[red]', '[red bold]', '[green]',
                   '[bold]', '[/]']

    def format(self, record):
        formatter = logging.Formatter(
            fmt=self.MSG_FORMAT,
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        formatted = formatter.format(record)
        for char in self.FORMAT_CHARS + self.MARKUP_TAGS:
            formatted = formatted.replace(char, '')
        return formatted
