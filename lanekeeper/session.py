import json
import logging
import os
import time

logger = logging.getLogger(__name__)


class Session:
    '''
    State carried between passes, keyed by MAC:
      handles[mac]  = {'ip': ..., 'dst': handle, 'src': handle}
      notified[mac] = True once a guest notification was delivered
    plus the resolved critical-service addresses and when they were resolved.
    Persisted as one JSON document; nothing here is authoritative, it only
    lets a pass skip work and avoid duplicate notifications.
    '''
    def __init__(self, path=None):
        self.path = path
        self.handles = {}
        self.notified = {}
        self.critical = {'resolved_at': 0, 'ips': []}
        if path: self.load()

    def load(self):
        if not os.path.exists(self.path): return
        try:
            with open(self.path, 'r') as f: saved = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f'⚠️ Failed to load session file, starting fresh: '
                         f'{e}')
            return
        for mac, entry in saved.get('handles', {}).items():
            if isinstance(entry, dict) and entry.get('ip'):
                self.handles[mac] = {'ip': entry['ip'],
                                     'dst': entry.get('dst'),
                                     'src': entry.get('src')}
        self.notified = {mac: True for mac, flag
                         in saved.get('notified', {}).items() if flag}
        critical = saved.get('critical')
        if isinstance(critical, dict):
            self.critical = {'resolved_at': critical.get('resolved_at', 0),
                             'ips': list(critical.get('ips', []))}
        logger.debug(f'📁 Loaded session: {len(self.handles)} handle pair(s), '
                     f'{len(self.notified)} notified guest(s)')

    def save(self):
        if not self.path: return
        out = {'handles': self.handles, 'notified': self.notified,
               'critical': self.critical}
        os.makedirs(os.path.dirname(self.path) or '.', exist_ok=True)
        tmp_file = self.path + '.tmp'
        with open(tmp_file, 'w') as f: json.dump(out, f, indent=2)
        os.replace(tmp_file, self.path)

    # Guest filter handle pairs

    def get_handles(self, mac, ip):
        '''
        Cached (dst, src) pair for mac. An entry recorded for another IP is
        stale and dropped here.
        '''
        entry = self.handles.get(mac)
        if not entry: return None
        if entry['ip'] != ip:
            logger.info(f'🔁 {mac} moved from {entry["ip"]} to {ip}, '
                        f'dropping cached handles')
            del self.handles[mac]
            return None
        return entry['dst'], entry['src']

    def set_handles(self, mac, ip, dst, src):
        self.handles[mac] = {'ip': ip, 'dst': dst, 'src': src}

    def drop_handles(self, mac):
        return self.handles.pop(mac, None)

    def clear_handles(self):
        self.handles = {}

    def retain(self, macs):
        '''Drops handle entries for every MAC not in macs.'''
        for mac in set(self.handles) - set(macs):
            logger.debug(f'🧹 Forgetting handles of departed {mac}')
            del self.handles[mac]

    # Notification records

    def was_notified(self, mac):
        return self.notified.get(mac, False)

    def mark_notified(self, mac):
        self.notified[mac] = True

    def unmark_notified(self, mac):
        self.notified.pop(mac, None)

    # Critical service addresses

    def critical_ips(self, max_age):
        '''Cached resolution, or None when older than max_age seconds.'''
        if time.time() - self.critical['resolved_at'] > max_age: return None
        return list(self.critical['ips'])

    def set_critical_ips(self, ips):
        self.critical = {'resolved_at': time.time(), 'ips': sorted(ips)}
