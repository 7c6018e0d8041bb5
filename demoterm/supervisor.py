import logging
import os

logger = logging.getLogger(__name__)


def run_detached(target):
    """Run `target` in a new background process

    The process is the leader of a new session so that it keeps running after
    the terminal of the caller is closed. It exits with the value returned by
    `target` (0 if None, 1 if `target` raised).

    :return: PID of the background process (in the calling process only)
    """
    pid = os.fork()
    if pid != 0:
        return pid

    # Child process - never returns
    exit_code = 1
    try:
        os.setsid()
        exit_code = target() or 0
    except Exception:  # pylint: disable=broad-except
        logger.exception('Background session failed')
    finally:
        logging.shutdown()
        os._exit(exit_code)
