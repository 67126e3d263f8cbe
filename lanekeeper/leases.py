import collections
import ipaddress
import logging
import os
import re
import shlex

from .errors import ConfigurationMissing

logger = logging.getLogger(__name__)

MAC_RE = re.compile(r'[0-9a-f]{2}([:][0-9a-f]{2}){5}$')
UNKNOWN_HOSTNAME = 'Unknown'

Lease = collections.namedtuple(
    'Lease', ['timestamp', 'mac', 'ip', 'hostname', 'client_id'])
Reservation = collections.namedtuple('Reservation', ['mac', 'ip', 'hostname'])


def normalize_mac(mac):
    '''Lower-cases and validates a MAC address. Returns None if invalid.'''
    mac = (mac or '').strip().lower().replace('-', ':')
    return mac if MAC_RE.match(mac) else None


def is_ipv4(ip_str):
    try:
        ipaddress.IPv4Address(ip_str)
        return True
    except ValueError:
        return False


def parse_lease_line(line):
    '''
    Parses one dnsmasq lease record:
        <expiry> <mac> <ip> <hostname> [client-id]
    Returns a Lease, or None for anything that doesn't look like one.
    '''
    parts = line.split()
    if len(parts) < 4: return None
    try:
        timestamp = int(parts[0])
    except ValueError:
        return None
    mac = normalize_mac(parts[1])
    if not mac or not is_ipv4(parts[2]): return None
    hostname = parts[3]
    if hostname == '*': hostname = UNKNOWN_HOSTNAME
    client_id = parts[4] if len(parts) > 4 and parts[4] != '*' else None
    return Lease(timestamp, mac, parts[2], hostname, client_id)


def read_leases(path):
    '''Returns all well-formed leases, skipping malformed lines.'''
    if not os.path.exists(path):
        logger.warning(f'⚠️ Lease file {path} does not exist')
        return []
    leases = []
    skipped = 0
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        for line in f:
            if not line.strip(): continue
            lease = parse_lease_line(line)
            if lease is None:
                skipped += 1
                continue
            leases.append(lease)
    if skipped:
        logger.debug(f'Skipped {skipped} malformed lease line(s) in {path}')
    return leases


class Registry:
    '''
    Static address reservations. Membership is keyed by MAC only; a device
    is "registered" exactly when its MAC appears here.
    '''
    def __init__(self, reservations=None):
        self.by_mac = {}
        for r in reservations or []:
            self.by_mac[r.mac] = r

    def is_registered(self, mac):
        return normalize_mac(mac) in self.by_mac

    def entries(self):
        return sorted(self.by_mac.values())

    def __len__(self):
        return len(self.by_mac)


def _flush_host(block, reservations):
    if block is None: return
    for mac in block['macs']:
        reservations.append(Reservation(mac, block['ip'], block['name']))


def parse_registry(text):
    '''
    Parses the host sections of an OpenWrt UCI dhcp file:

        config host
            option name 'laptop'
            option mac 'aa:bb:cc:dd:ee:ff'
            option ip '192.168.1.20'

    A single "option mac" may list several MACs separated by spaces, and
    "list mac" lines are accepted too.
    '''
    reservations = []
    block = None
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith('#'): continue
        try:
            tokens = shlex.split(line)
        except ValueError:
            continue
        if tokens[0] == 'config':
            _flush_host(block, reservations)
            block = None
            if len(tokens) > 1 and tokens[1] == 'host':
                block = {'macs': [], 'ip': None, 'name': None}
            continue
        if block is None or len(tokens) < 3: continue
        if tokens[0] not in ('option', 'list'): continue
        key, value = tokens[1], ' '.join(tokens[2:])
        if key == 'mac':
            for candidate in value.split():
                mac = normalize_mac(candidate)
                if mac: block['macs'].append(mac)
                else: logger.warning(f'⚠️ Ignoring invalid MAC "{candidate}" '
                                     f'in registry')
        elif key == 'ip':
            block['ip'] = value
        elif key == 'name':
            block['name'] = value
    _flush_host(block, reservations)
    return reservations


def read_registry(path):
    '''Loads the reservation registry. Its absence is fatal, since every
    household device would otherwise be demoted to the guest lane.'''
    if not os.path.exists(path):
        raise ConfigurationMissing(f'Registry file not found: {path}')
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        return Registry(parse_registry(f.read()))
