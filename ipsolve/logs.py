# Logging utilities.

import logging
import sys

#: print_level (0..12) -> logging level. 0 silences the logger.
_PRINT_LEVELS = {
    0: logging.CRITICAL + 10,
    1: logging.ERROR,
    2: logging.ERROR,
    3: logging.WARNING,
    4: logging.WARNING,
    5: logging.INFO,
}


def level_from_print_level(print_level: int) -> int:
    print_level = int(print_level)
    if print_level <= 0:
        return _PRINT_LEVELS[0]
    return _PRINT_LEVELS.get(print_level, logging.DEBUG)


def config_logger(name, format='%(message)s', datefmt=None,
                  stream=sys.stdout, level=logging.INFO,
                  filename=None, filemode='w', filelevel=None,
                  propagate=False):
    """
    Basic configuration for the logging system. Similar to
    logging.basicConfig but the logger `name` is configurable and both a
    file output and a stream output can be created. Returns a logger
    object.

    :parameters:

    :name:      Logger name
    :format:    handler format string (default=`%(message)s`)
    :datefmt:   handler date/time format specifier
    :stream:    initialize the StreamHandler using `stream`
                (None disables the stream, default=sys.stdout)
    :level:     logger level (default=INFO).
    :filename:  create FileHandler using `filename` (default=None)
    :filemode:  open `filename` with specified filemode (`w` or `a`)
    :filelevel: logger level for file logger (default=`level`)
    :propagate: propagate message to parent (default=False)
    """
    logger = logging.getLogger(name)
    logger.setLevel(min(level, filelevel) if filelevel is not None else level)
    fmt = logging.Formatter(format, datefmt)
    logger.propagate = propagate

    # Remove existing handlers, otherwise multiple handlers can accrue
    for hdlr in list(logger.handlers):
        logger.removeHandler(hdlr)
        hdlr.close()

    # Add NullHandler if no file or stream output so that modules don't
    # emit a warning about no handler.
    if not (filename or stream):
        logger.addHandler(logging.NullHandler())

    if filename:
        hdlr = logging.FileHandler(filename, filemode)
        hdlr.setLevel(level if filelevel is None else filelevel)
        hdlr.setFormatter(fmt)
        logger.addHandler(hdlr)

    if stream:
        hdlr = logging.StreamHandler(stream)
        hdlr.setLevel(level)
        hdlr.setFormatter(fmt)
        logger.addHandler(hdlr)

    return logger


def add_file_handler(logger, filename, level, format='%(message)s', filemode='w'):
    """
    Attach one more FileHandler to `logger` without touching the existing
    handlers. Lowers the logger level if needed so the file sees `level`.
    """
    hdlr = logging.FileHandler(filename, filemode)
    hdlr.setLevel(level)
    hdlr.setFormatter(logging.Formatter(format))
    logger.addHandler(hdlr)
    if logger.level == logging.NOTSET or logger.level > level:
        logger.setLevel(level)
    return hdlr


# Library default: stay silent unless the application configures logging.
logging.getLogger("ipsolve").addHandler(logging.NullHandler())
