import logging
from datetime import datetime, timezone

import requests

from .classifier import PolicyEntry, PolicySnapshot
from .errors import NotificationDeliveryFailure, UpstreamUnavailable
from .leases import is_ipv4

logger = logging.getLogger(__name__)

JSON_HEADERS = {
    'Accept': 'application/json',
    'Content-Type': 'application/json',
}


def utcnow_iso():
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def _as_bool(value):
    if isinstance(value, bool): return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


class PolicyClient:
    '''
    Talks to the household control plane. Fetches are all-or-nothing: any
    transport error, non-2xx status, unparsable body or missing success flag
    surfaces as UpstreamUnavailable, and the caller keeps whatever kernel
    state it already has.
    '''
    def __init__(self, cfg, session=None, dry_run=False):
        self.base = cfg.api_base
        self.household_id = cfg.household_id
        self.timeout = cfg.request_timeout
        self.dry_run = dry_run
        self.s = session or requests.Session()
        self.s.headers.update(JSON_HEADERS)

    def _url(self, path):
        return f'{self.base}{path}'

    def _get_json(self, path):
        url = self._url(path)
        try:
            resp = self.s.get(url, params={'household_id': self.household_id},
                              timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamUnavailable(f'GET {url} failed: {e}')
        if not (200 <= resp.status_code < 300):
            raise UpstreamUnavailable(f'GET {url} => {resp.status_code}')
        try:
            body = resp.json()
        except ValueError as e:
            raise UpstreamUnavailable(f'GET {url} returned invalid JSON: {e}')
        if not isinstance(body, dict) or body.get('success') is not True:
            raise UpstreamUnavailable(f'GET {url} did not report success')
        devices = body.get('devices')
        if not isinstance(devices, list):
            raise UpstreamUnavailable(f'GET {url} has no device list')
        return devices

    def _entries(self, devices, fast_field=None):
        entries = []
        for d in devices:
            if not isinstance(d, dict): continue
            ip = str(d.get('ip', '')).strip()
            if not is_ipv4(ip):
                logger.warning(f'⚠️ Ignoring snapshot entry with invalid IP: '
                               f'{d!r}')
                continue
            if fast_field is None:
                entries.append(PolicyEntry(ip, True, 'adult'))
            else:
                entries.append(PolicyEntry(ip, _as_bool(d.get(fast_field)),
                                           d.get('ageGroup')))
        return entries

    def fetch_device_controls(self):
        '''Full device-control snapshot (speed and DNS posture).'''
        devices = self._get_json('/device-controls')
        snapshot = PolicySnapshot(self._entries(devices, 'hasFastEntitlement'))
        logger.info(f'📥 Fetched device controls for {len(snapshot)} '
                    f'device(s)')
        return snapshot

    def fetch_fast_devices(self):
        '''Simplified mode: the list names only devices entitled to fast.'''
        devices = self._get_json('/fast-devices')
        snapshot = PolicySnapshot(self._entries(devices))
        logger.info(f'📥 Fetched {len(snapshot)} fast device(s)')
        return snapshot

    def notify_new_guest(self, ip, mac, hostname):
        url = self._url('/new-guest')
        payload = {
            'householdId': self.household_id,
            'deviceInfo': hostname,
            'deviceIP': ip,
            'deviceMAC': mac,
            'timestamp': utcnow_iso(),
        }
        if self.dry_run:
            logger.info(f'🧪 TEST MODE: would notify {url} of guest {ip} '
                        f'({mac})')
            return payload
        try:
            resp = self.s.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise NotificationDeliveryFailure(f'POST {url} failed: {e}')
        if not (200 <= resp.status_code < 300):
            raise NotificationDeliveryFailure(
                f'POST {url} => {resp.status_code}')
        return payload

    def register_router(self, email, router_mac):
        '''One-shot provisioning. Returns the household id.'''
        url = self._url('/setup')
        try:
            resp = self.s.post(url, json={'email': email,
                                          'router_mac': router_mac},
                               timeout=self.timeout)
            body = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise UpstreamUnavailable(f'POST {url} failed: {e}')
        if not isinstance(body, dict) or body.get('success') is not True or \
           not body.get('household_id'):
            raise UpstreamUnavailable(f'POST {url} did not report success')
        return str(body['household_id'])
