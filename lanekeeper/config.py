import json
import os
import re

from .errors import ConfigurationMissing

CONFIG_FILE = '/etc/lanekeeper/config.json'

MODE_DEVICE_CONTROLS = 'device-controls'
MODE_FAST_DEVICES = 'fast-devices'

RATE_RE = re.compile(
    r'^(\d+(?:\.\d+)?)\s*(bit|kbit|mbit|gbit|bps|kbps|mbps|gbps)$',
    re.IGNORECASE)
RATE_UNITS = {
    'bit': 1, 'kbit': 10**3, 'mbit': 10**6, 'gbit': 10**9,
    'bps': 8, 'kbps': 8 * 10**3, 'mbps': 8 * 10**6, 'gbps': 8 * 10**9,
}


def parse_rate(value):
    '''Converts a tc rate string (e.g. "50mbit") to bits per second.'''
    m = RATE_RE.match(str(value).strip())
    if not m:
        raise ValueError(f'Invalid rate "{value}"')
    return int(float(m.group(1)) * RATE_UNITS[m.group(2).lower()])


class Config:
    '''
    Household configuration, a flat JSON document. Only the household id,
    the control plane URL and the WAN interface are mandatory; interface
    naming differs between router builds, so the WAN side is never guessed.
    A router that is being provisioned has no household id yet.
    '''
    def __init__(self, path=CONFIG_FILE, data=None, provisioning=False):
        self.path = path
        self.data = data if data is not None else self._load(path)

        # Required
        if provisioning:
            self.household_id = str(self._get('household_id', '')).strip()
        else:
            self.household_id = str(self._req('household_id')).strip()
        self.server_url = str(self._req('server_url')).rstrip('/')
        self.wan_interface = self._req('wan_interface')
        if not self.household_id and not provisioning:
            raise ConfigurationMissing(
                f'Empty "household_id" in {self.path}')

        # Interfaces and lanes
        self.lan_interface = self._get('lan_interface', 'br-lan')
        self.fast_speed = self._get('fast_speed', '100mbit')
        self.slow_speed = self._get('slow_speed', '10mbit')
        self.guest_speed = self._get('guest_speed', '10mbit')
        self.total_speed = self._get('total_speed', '1000mbit')
        self.fast_mark = int(self._get('fast_mark', 5))

        # Control plane
        self.api_prefix = self._get('api_prefix', '/api/router')
        self.request_timeout = float(self._get('request_timeout', 30))
        self.mode = self._get('mode', MODE_DEVICE_CONTROLS)
        self.filter_resolver = self._get('filter_resolver', '208.67.222.123')

        # Scheduling
        self.poll_interval = float(self._get('poll_interval', 300))
        self.debounce_seconds = float(self._get('debounce_seconds', 2))

        # Files
        self.lease_file = self._get('lease_file', '/tmp/dhcp.leases')
        self.registry_file = self._get('registry_file', '/etc/config/dhcp')
        self.state_file = self._get('state_file',
                                    '/var/lib/lanekeeper/session.json')
        self.lock_file = self._get('lock_file', '/var/run/lanekeeper.lock')
        self.activity_log = self._get('activity_log',
                                      '/var/log/lanekeeper/activity.log')
        self.operation_log = self._get('operation_log',
                                       '/var/log/lanekeeper/operations.log')
        self.activity_log_bytes = int(self._get('activity_log_bytes',
                                                256 * 1024))

        # Services that must never be throttled
        self.critical_ips = list(self._get('critical_ips', []))
        self.critical_hosts = list(self._get('critical_hosts', []))
        self.critical_fallback_ips = list(
            self._get('critical_fallback_ips', []))

        self._validate()

    @property
    def api_base(self):
        return f'{self.server_url}{self.api_prefix or ""}'

    def _load(self, path):
        if not os.path.exists(path):
            raise ConfigurationMissing(f'Config file not found: {path}')
        with open(path, 'r', encoding='utf-8') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f'Config is not valid JSON: {e}')
        if not isinstance(data, dict):
            raise ValueError('Config must be a JSON object')
        return data

    def _req(self, key):
        if self.data.get(key) in (None, ''):
            raise ConfigurationMissing(
                f'Missing required config key "{key}" in {self.path}')
        return self.data[key]

    def _get(self, key, default=None):
        return self.data.get(key, default)

    def _validate(self):
        for key in ('fast_speed', 'slow_speed', 'guest_speed', 'total_speed'):
            parse_rate(getattr(self, key))
        if self.mode not in (MODE_DEVICE_CONTROLS, MODE_FAST_DEVICES):
            raise ValueError(f'Unknown mode "{self.mode}"')
        if self.lan_interface == self.wan_interface:
            raise ValueError('LAN and WAN interface must differ')
        if self.poll_interval <= 0 or self.debounce_seconds < 0:
            raise ValueError('Intervals must be positive')
        if not 0 < self.fast_mark < 2**32:
            raise ValueError(f'Invalid fast_mark {self.fast_mark}')


def write_config(path, updates):
    '''Merges keys into the JSON config file, creating it if needed.'''
    data = {}
    if os.path.exists(path):
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    data.update(updates)
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    tmp_file = path + '.tmp'
    with open(tmp_file, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_file, path)
    return data
