import fcntl
import logging
import os

from .errors import LockContention

logger = logging.getLogger(__name__)


class ConcurrencyGuard:
    '''
    Exclusive, non-blocking lock on a file, held for the duration of one
    kernel-mutating pass. The kernel drops it when the holder exits, so a
    crashed pass never leaves a stale lock behind.
    '''
    def __init__(self, path):
        self.path = path
        self.fd = None

    def acquire(self):
        os.makedirs(os.path.dirname(self.path) or '.', exist_ok=True)
        fd = open(self.path, 'a+')
        try:
            fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fd.close()
            raise LockContention(f'Another lanekeeper pass holds {self.path}')
        fd.seek(0)
        fd.truncate()
        fd.write(f'{os.getpid()}\n')
        fd.flush()
        self.fd = fd
        logger.debug(f'🔒 Acquired {self.path}')

    def release(self):
        if self.fd is None: return
        try:
            fcntl.flock(self.fd.fileno(), fcntl.LOCK_UN)
        finally:
            self.fd.close()
            self.fd = None
        logger.debug(f'🔓 Released {self.path}')

    @property
    def held(self):
        return self.fd is not None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *exc):
        self.release()
        return False
