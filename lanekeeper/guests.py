import collections
import logging
import os
import threading

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .errors import EnforcementFailure, NotificationDeliveryFailure

logger = logging.getLogger(__name__)

ScanResult = collections.namedtuple('ScanResult',
                                    ['guests', 'applied', 'failed', 'notified'])


class GuestManager:
    '''
    Puts every leased device with an unregistered MAC into the guest lane and
    tells the household about it once per session. A delivery failure clears
    the notified flag again, so the next scan retries.
    '''
    def __init__(self, engine, client, session):
        self.engine = engine
        self.client = client
        self.session = session

    def scan(self, leases, registry, force=False):
        guests = [l for l in leases if not registry.is_registered(l.mac)]
        applied, failed, notified = [], [], []
        for lease in guests:
            try:
                if self.engine.apply_guest(lease.ip, lease.mac, force=force):
                    applied.append(lease.ip)
                self.engine.remove_dns_filter(lease.ip, 'guest dns open')
            except EnforcementFailure as e:
                logger.error(f'❌ Guest enforcement failed for {lease.mac}: '
                             f'{e.reason}')
                failed.append(lease.ip)
                continue
            if self.notify(lease):
                notified.append(lease.ip)
        if guests:
            logger.info(f'👥 Guest scan: {len(guests)} guest(s), '
                        f'{len(applied)} (re)applied, {len(failed)} failed, '
                        f'{len(notified)} notified')
        return ScanResult([l.ip for l in guests], applied, failed, notified)

    def notify(self, lease):
        '''Sends at most one notification per MAC. Returns True if sent.'''
        if self.client is None or self.session.was_notified(lease.mac):
            return False
        self.session.mark_notified(lease.mac)
        try:
            self.client.notify_new_guest(lease.ip, lease.mac, lease.hostname)
        except NotificationDeliveryFailure as e:
            self.session.unmark_notified(lease.mac)
            logger.warning(f'⚠️ Guest notification for {lease.mac} not '
                           f'delivered, will retry: {e}')
            return False
        logger.info(f'📨 Notified household about new guest '
                    f'{lease.hostname} ({lease.ip}, {lease.mac})')
        return True


class LeaseEventHandler(FileSystemEventHandler):
    def __init__(self, watcher):
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event):
        paths = {getattr(event, 'src_path', None),
                 getattr(event, 'dest_path', None)}
        if self.watcher.path in {os.path.abspath(p) for p in paths if p}:
            self.watcher.touch()


class LeaseWatcher:
    '''
    Watches the lease file and calls callback once the file has been quiet
    for debounce seconds, so a half-written table is never read. Watches the
    directory rather than the file since dnsmasq replaces it on every write.
    '''
    def __init__(self, path, callback, debounce=2.0):
        self.path = os.path.abspath(path)
        self.callback = callback
        self.debounce = debounce
        self.lock = threading.Lock()
        self.timer = None
        self.observer = None

    def touch(self):
        '''(Re)arms the debounce timer.'''
        with self.lock:
            if self.timer: self.timer.cancel()
            self.timer = threading.Timer(self.debounce, self._fire)
            self.timer.daemon = True
            self.timer.start()

    def _fire(self):
        with self.lock:
            self.timer = None
        logger.debug(f'📂 Lease file changed: {self.path}')
        self.callback()

    def start(self):
        directory = os.path.dirname(self.path)
        self.observer = Observer()
        self.observer.schedule(LeaseEventHandler(self), directory,
                               recursive=False)
        self.observer.daemon = True
        self.observer.start()
        logger.info(f'👀 Watching {self.path} for lease changes')

    def stop(self):
        with self.lock:
            if self.timer: self.timer.cancel()
            self.timer = None
        if self.observer:
            self.observer.stop()
            self.observer.join()
            self.observer = None
