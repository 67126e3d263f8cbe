'''
Production kernel port: tc over rtnetlink (pyroute2) and the firewall through
nftables' JSON interface. Both sides are read back as structured data and
turned into the records defined in lanekeeper.kernel.
'''
import ipaddress
import json
import logging
import struct
import subprocess
from socket import htons

from pyroute2 import IPRoute
from pyroute2.netlink.exceptions import NetlinkError

from .config import parse_rate
from .errors import KernelError
from .kernel import (CHAIN_FORWARD, CHAIN_POSTROUTING, CHAIN_PREROUTING,
                     DIR_DST, DIR_SRC, DnsRedirect, KernelPort, MarkRule,
                     Qdisc, ROOT, TcFilter, TrafficClass, format_handle)

logger = logging.getLogger(__name__)

ETH_P_IP = 0x0800
TC_H_ROOT = 0xFFFFFFFF
ROOT_HANDLE = 0x10000   # "1:"

# Byte offsets of the IPv4 source / destination address in the IP header
U32_OFFSETS = {DIR_SRC: 12, DIR_DST: 16}
U32_DIRECTIONS = {v: k for k, v in U32_OFFSETS.items()}

# struct tc_u32_sel is 16 bytes after the attribute header, then the keys
NLA_HEADER = 4
U32_SEL_SIZE = 16
U32_KEY_SIZE = 16

NFT_TABLE = 'lanekeeper'
NFT_DNS_CHAIN = 'dns'
NFT_CHAINS = {
    CHAIN_PREROUTING: 'type filter hook prerouting priority mangle; '
                      'policy accept;',
    CHAIN_FORWARD: 'type filter hook forward priority mangle; policy accept;',
    CHAIN_POSTROUTING: 'type filter hook postrouting priority mangle; '
                       'policy accept;',
    NFT_DNS_CHAIN: 'type nat hook prerouting priority dstnat; '
                   'policy accept;',
}
MARK_FIELD = {DIR_DST: 'daddr', DIR_SRC: 'saddr'}


def tc_handle(text):
    '''"1:10" -> 0x10010, "1:" -> 0x10000 (tc handles are hexadecimal).'''
    major, _, minor = text.partition(':')
    return (int(major or '0', 16) << 16) | int(minor or '0', 16)


def filter_info(prio):
    '''tcm_info of a filter: priority above, IPv4 protocol below.'''
    return (prio << 16) | htons(ETH_P_IP)


def tc_text(value, qdisc=False):
    if value == TC_H_ROOT: return ROOT
    major, minor = value >> 16, value & 0xffff
    if qdisc and not minor: return f'{major:x}:'
    return f'{major:x}:{minor:x}'


def _attr(msg, name):
    try:
        return msg.get_attr(name)
    except (AttributeError, KeyError):
        return None


def parse_qdisc(iface, msg):
    kind = _attr(msg, 'TCA_KIND')
    default = None
    if kind == 'htb':
        opts = _attr(msg, 'TCA_OPTIONS')
        init = _attr(opts, 'TCA_HTB_INIT') if opts is not None else None
        if init is not None:
            default = f'{init["defcls"]:x}'
    return Qdisc(iface, tc_text(msg['handle'], qdisc=True),
                 tc_text(msg['parent']), kind, default)


def parse_class(iface, msg):
    if _attr(msg, 'TCA_KIND') != 'htb': return None
    opts = _attr(msg, 'TCA_OPTIONS')
    parms = _attr(opts, 'TCA_HTB_PARMS') if opts is not None else None
    rate = ceil = None
    if parms is not None:
        # htb reports bytes per second; 64-bit attributes win when present
        rate = (_attr(opts, 'TCA_HTB_RATE64') or parms['rate']) * 8
        ceil = (_attr(opts, 'TCA_HTB_CEIL64') or parms['ceil']) * 8
    return TrafficClass(iface, tc_text(msg['handle']), tc_text(msg['parent']),
                        rate, ceil)


def u32_keys(sel):
    '''
    (mask, value, offset) for every key of a TCA_U32_SEL attribute, read
    from the attribute bytes. pyroute2 starts decoding the keys 4 bytes
    short of where the kernel puts them, so its own 'keys' are not used.
    '''
    keys = []
    pos = sel.offset + NLA_HEADER + U32_SEL_SIZE
    for _ in range(sel['nkeys']):
        mask, value = struct.unpack_from('>II', sel.data, pos)
        offset, = struct.unpack_from('=i', sel.data, pos + 8)
        keys.append((mask, value, offset))
        pos += U32_KEY_SIZE
    return keys


def parse_filter(iface, msg):
    '''
    Turns one RTM_NEWTFILTER message into a TcFilter. Returns None for
    entries that carry no classification (u32 hash table headers and the
    like).
    '''
    kind = _attr(msg, 'TCA_KIND')
    opts = _attr(msg, 'TCA_OPTIONS')
    if opts is None: return None
    prio = msg['info'] >> 16
    if kind == 'fw':
        classid = _attr(opts, 'TCA_FW_CLASSID')
        if classid is None: return None
        return TcFilter(iface, msg['handle'], prio, 'fw', None, None,
                        tc_text(classid), msg['handle'])
    if kind == 'u32':
        classid = _attr(opts, 'TCA_U32_CLASSID')
        sel = _attr(opts, 'TCA_U32_SEL')
        if classid is None or sel is None: return None
        ip = direction = None
        for mask, value, offset in u32_keys(sel):
            if mask == 0xffffffff and offset in U32_DIRECTIONS:
                ip = str(ipaddress.IPv4Address(value))
                direction = U32_DIRECTIONS[offset]
                break
        return TcFilter(iface, msg['handle'], prio, 'u32', ip, direction,
                        tc_text(classid), None)
    return None


def _match(expr):
    '''{"match": {"left": {"payload": {protocol, field}}, "right": v}}'''
    m = expr.get('match')
    if not m: return None
    payload = m.get('left', {}).get('payload')
    if not payload or m.get('op', '==') != '==': return None
    return payload.get('protocol'), payload.get('field'), m.get('right')


def parse_nft_rules(doc):
    '''
    Extracts lanekeeper's own rules from "nft --json list ..." output.
    Returns (marks, dns_redirects); rules of any other shape are ignored.
    '''
    marks = []
    redirects = []
    for item in doc.get('nftables', []):
        rule = item.get('rule')
        if not rule: continue
        chain, handle = rule.get('chain'), rule.get('handle')
        matches = {}
        mark = resolver = None
        for expr in rule.get('expr', []):
            m = _match(expr)
            if m:
                matches[(m[0], m[1])] = m[2]
            elif 'mangle' in expr:
                key = expr['mangle'].get('key', {})
                if key.get('meta', {}).get('key') == 'mark':
                    mark = expr['mangle'].get('value')
            elif 'dnat' in expr:
                resolver = expr['dnat'].get('addr')
        if chain == NFT_DNS_CHAIN and resolver:
            ip = matches.get(('ip', 'saddr'))
            for proto in ('udp', 'tcp'):
                if matches.get((proto, 'dport')) == 53 and ip:
                    redirects.append(DnsRedirect(ip, proto, resolver, handle))
        elif mark is not None:
            for direction, field in MARK_FIELD.items():
                ip = matches.get(('ip', field))
                if ip:
                    marks.append(MarkRule(chain, direction, ip, mark, handle))
                    break
    return marks, redirects


class NetlinkKernel(KernelPort):
    def __init__(self, ipr=None):
        self.ipr = ipr or IPRoute()
        self.indexes = {}

    def close(self):
        self.ipr.close()

    def _index(self, iface):
        if iface not in self.indexes:
            found = self.ipr.link_lookup(ifname=iface)
            if not found:
                raise KernelError(f'Interface "{iface}" does not exist.',
                                  code=19)
            self.indexes[iface] = found[0]
        return self.indexes[iface]

    def _tc(self, *args, **kwargs):
        try:
            return self.ipr.tc(*args, **kwargs)
        except NetlinkError as e:
            raise KernelError(f'tc {args[0]} failed: {e}', code=e.code)
        except Exception as e:
            # Request building inside pyroute2 (plugin arguments, rates)
            raise KernelError(f'tc {args[0]} rejected: '
                              f'{type(e).__name__}: {e}')

    # Traffic control tree

    def list_qdiscs(self, iface):
        idx = self._index(iface)
        return [parse_qdisc(iface, m) for m in self.ipr.get_qdiscs(index=idx)]

    def list_classes(self, iface):
        idx = self._index(iface)
        out = [parse_class(iface, m) for m in self.ipr.get_classes(index=idx)]
        return [c for c in out if c is not None]

    def add_root_qdisc(self, iface, default):
        self._tc('add', 'htb', self._index(iface), ROOT_HANDLE,
                 default=int(default, 16))

    def change_root_default(self, iface, default):
        self._tc('change', 'htb', self._index(iface), ROOT_HANDLE,
                 default=int(default, 16))

    def delete_root_qdisc(self, iface):
        self._tc('del', index=self._index(iface), handle=0, parent=TC_H_ROOT)

    def set_class(self, iface, classid, parent, rate, ceil):
        # pyroute2 only parses integer rates with its own unit names
        self._tc('replace-class', 'htb', self._index(iface),
                 tc_handle(classid), parent=tc_handle(parent),
                 rate=f'{parse_rate(rate)}bit', ceil=f'{parse_rate(ceil)}bit')

    def set_leaf_qdisc(self, iface, parent):
        leaf = tc_handle(parent.split(':')[1] + ':')
        self._tc('replace', 'sfq', self._index(iface), leaf,
                 parent=tc_handle(parent), perturb=10)

    # Classifier filters

    def list_filters(self, iface):
        idx = self._index(iface)
        try:
            msgs = self.ipr.get_filters(index=idx, parent=ROOT_HANDLE)
        except NetlinkError as e:
            if e.code in (2, 22): return []  # no root qdisc yet
            raise KernelError(f'Listing filters on {iface} failed: {e}',
                              code=e.code)
        out = [parse_filter(iface, m) for m in msgs]
        return [f for f in out if f is not None]

    def add_u32_filter(self, iface, ip, direction, flowid, prio):
        before = {f.handle for f in self.list_filters(iface)}
        key = f'0x{int(ipaddress.IPv4Address(ip)):08x}/0xffffffff+' \
              f'{U32_OFFSETS[direction]}'
        self._tc('add-filter', 'u32', self._index(iface), parent=ROOT_HANDLE,
                 prio=prio, protocol=ETH_P_IP, target=tc_handle(flowid),
                 keys=[key])
        # The kernel picks the handle; find the one that wasn't there before
        for f in self.list_filters(iface):
            if f.handle not in before and f.kind == 'u32' and f.ip == ip and \
               f.direction == direction and f.flowid == flowid:
                return f
        return TcFilter(iface, None, prio, 'u32', ip, direction, flowid, None)

    def add_fw_filter(self, iface, mark, flowid, prio):
        self._tc('add-filter', 'fw', self._index(iface), handle=mark,
                 parent=ROOT_HANDLE, prio=prio, protocol=ETH_P_IP,
                 classid=tc_handle(flowid))
        return TcFilter(iface, mark, prio, 'fw', None, None, flowid, mark)

    def delete_filter(self, flt):
        if flt.handle is None:
            raise KernelError(f'Refusing to delete filter without handle '
                              f'({flt.ip})')
        logger.debug(f'Deleting {flt.kind} filter '
                     f'{format_handle(flt.handle)} on {flt.iface}')
        # Without a kind pyroute2 skips the classifier plugin, which wants
        # the full match for a u32 delete; prio, protocol and handle suffice
        self._tc('del-filter', index=self._index(flt.iface),
                 handle=flt.handle, parent=ROOT_HANDLE,
                 info=filter_info(flt.prio))

    # Firewall

    def _nft(self, command, json_out=False):
        args = ['nft']
        if json_out: args += ['--json', '--handle']
        args.append(command)
        try:
            result = subprocess.run(args, capture_output=True, text=True,
                                    check=True)
        except FileNotFoundError:
            raise KernelError('nft binary not found')
        except subprocess.CalledProcessError as e:
            raise KernelError(f'nft {command!r} failed: {e.stderr.strip()}',
                              code=e.returncode)
        if not json_out: return None
        try:
            return json.loads(result.stdout or '{}')
        except ValueError as e:
            raise KernelError(f'nft returned invalid JSON: {e}')

    def ensure_firewall(self):
        '''Creates the private table and its chains ("add" is idempotent).'''
        self._nft(f'add table ip {NFT_TABLE}')
        for chain, spec in NFT_CHAINS.items():
            self._nft(f'add chain ip {NFT_TABLE} {chain} {{ {spec} }}')

    def flush_firewall(self):
        for chain in NFT_CHAINS:
            try:
                self._nft(f'flush chain ip {NFT_TABLE} {chain}')
            except KernelError as e:
                logger.debug(f'Flush of {chain} skipped: {e}')

    def _list_table(self):
        try:
            return self._nft(f'list table ip {NFT_TABLE}', json_out=True)
        except KernelError as e:
            # Table not created yet
            if 'No such file' in str(e): return {}
            raise

    def list_marks(self):
        return parse_nft_rules(self._list_table())[0]

    def list_dns_redirects(self):
        return parse_nft_rules(self._list_table())[1]

    def add_mark(self, chain, direction, ip, mark):
        before = {r.handle for r in self.list_marks()}
        self._nft(f'insert rule ip {NFT_TABLE} {chain} '
                  f'ip {MARK_FIELD[direction]} {ip} meta mark set {mark}')
        for r in self.list_marks():
            if r.handle not in before and r.chain == chain and r.ip == ip and \
               r.direction == direction and r.mark == mark:
                return r
        return MarkRule(chain, direction, ip, mark, None)

    def delete_mark(self, rule):
        self._nft(f'delete rule ip {NFT_TABLE} {rule.chain} '
                  f'handle {rule.handle}')

    def add_dns_redirect(self, ip, proto, resolver):
        before = {r.handle for r in self.list_dns_redirects()}
        self._nft(f'add rule ip {NFT_TABLE} {NFT_DNS_CHAIN} ip saddr {ip} '
                  f'{proto} dport 53 dnat to {resolver}')
        for r in self.list_dns_redirects():
            if r.handle not in before and r.ip == ip and r.proto == proto:
                return r
        return DnsRedirect(ip, proto, resolver, None)

    def delete_dns_redirect(self, rule):
        self._nft(f'delete rule ip {NFT_TABLE} {NFT_DNS_CHAIN} '
                  f'handle {rule.handle}')
