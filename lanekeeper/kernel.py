'''
Kernel enforcement port.

Everything lanekeeper knows about the live kernel flows through a KernelPort:
the HTB tree and tc filters per interface, the packet-mark rules and the DNS
redirections. State comes back as the typed records below, never as text.
'''
import collections

DIR_DST = 'dst'   # download: match on destination address
DIR_SRC = 'src'   # upload: match on source address

CHAIN_PREROUTING = 'prerouting'
CHAIN_FORWARD = 'forward'
CHAIN_POSTROUTING = 'postrouting'

# (chain, direction) pairs that together mark one device for the fast lane
MARK_CHAINS = (
    (CHAIN_PREROUTING, DIR_DST),
    (CHAIN_FORWARD, DIR_DST),
    (CHAIN_POSTROUTING, DIR_SRC),
)

DNS_PROTOCOLS = ('udp', 'tcp')

ROOT = 'root'

Qdisc = collections.namedtuple(
    'Qdisc', ['iface', 'handle', 'parent', 'kind', 'default'])
TrafficClass = collections.namedtuple(
    'TrafficClass', ['iface', 'classid', 'parent', 'rate', 'ceil'])
TcFilter = collections.namedtuple(
    'TcFilter', ['iface', 'handle', 'prio', 'kind', 'ip', 'direction',
                 'flowid', 'mark'])
MarkRule = collections.namedtuple(
    'MarkRule', ['chain', 'direction', 'ip', 'mark', 'handle'])
DnsRedirect = collections.namedtuple(
    'DnsRedirect', ['ip', 'proto', 'resolver', 'handle'])


def format_handle(value):
    '''0x80000800 -> "800::800", the way tc prints u32 handles.'''
    if value is None: return '-'
    htid, hsh, node = value >> 20, (value >> 12) & 0xff, value & 0xfff
    return f'{htid:x}:{hsh:x}:{node:x}' if hsh else f'{htid:x}::{node:x}'


class KernelPort:
    '''
    Interface implemented by NetlinkKernel (production) and MemoryKernel
    (tests, dry runs). All mutating calls raise KernelError on failure.
    '''

    # Traffic control tree
    def list_qdiscs(self, iface):
        raise NotImplementedError

    def list_classes(self, iface):
        raise NotImplementedError

    def add_root_qdisc(self, iface, default):
        raise NotImplementedError

    def change_root_default(self, iface, default):
        raise NotImplementedError

    def delete_root_qdisc(self, iface):
        raise NotImplementedError

    def set_class(self, iface, classid, parent, rate, ceil):
        raise NotImplementedError

    def set_leaf_qdisc(self, iface, parent):
        raise NotImplementedError

    # Classifier filters
    def list_filters(self, iface):
        raise NotImplementedError

    def add_u32_filter(self, iface, ip, direction, flowid, prio):
        '''Installs a filter and returns it, including the kernel handle.'''
        raise NotImplementedError

    def add_fw_filter(self, iface, mark, flowid, prio):
        raise NotImplementedError

    def delete_filter(self, flt):
        '''Deletes exactly one filter, identified by its handle.'''
        raise NotImplementedError

    # Firewall
    def ensure_firewall(self):
        raise NotImplementedError

    def flush_firewall(self):
        raise NotImplementedError

    def list_marks(self):
        raise NotImplementedError

    def add_mark(self, chain, direction, ip, mark):
        raise NotImplementedError

    def delete_mark(self, rule):
        raise NotImplementedError

    def list_dns_redirects(self):
        raise NotImplementedError

    def add_dns_redirect(self, ip, proto, resolver):
        raise NotImplementedError

    def delete_dns_redirect(self, rule):
        raise NotImplementedError

    def close(self):
        pass
