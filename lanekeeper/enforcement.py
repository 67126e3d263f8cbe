'''
Turns per-device decisions into kernel rules and checks that they took.

Fast lane:  three mark rules (download in prerouting and forward, upload in
            postrouting); the topology's fw filter steers marked packets.
Slow lane:  one dst and one src u32 filter on the LAN interface to 1:30.
Guest lane: the same pair pointing at 1:20, tracked by handle per MAC.
Filtered DNS: udp and tcp port 53 from the device are redirected to the
            filtering resolver.
'''
import logging

from .classifier import DnsPosture, Lane
from .errors import EnforcementFailure, KernelError
from .kernel import DIR_DST, DIR_SRC, DNS_PROTOCOLS, MARK_CHAINS
from .topology import LANE_CLASSES, LANE_PRIO

logger = logging.getLogger(__name__)

NFT = 'nft'


class EnforcementEngine:
    def __init__(self, port, cfg, session, oplog):
        self.port = port
        self.session = session
        self.oplog = oplog
        self.lan = cfg.lan_interface
        self.fast_mark = cfg.fast_mark
        self.resolver = cfg.filter_resolver

    # Kernel views

    def _lane_filters(self, ip, lane):
        return [f for f in self.port.list_filters(self.lan)
                if f.kind == 'u32' and f.ip == ip and
                f.flowid == LANE_CLASSES[lane]]

    def _marks(self, ip):
        return [r for r in self.port.list_marks()
                if r.ip == ip and r.mark == self.fast_mark]

    def _redirects(self, ip):
        return [r for r in self.port.list_dns_redirects() if r.ip == ip]

    # Rule primitives, each written to the operation log

    def drop_filter(self, flt, lane, context):
        before = len(self._lane_filters(flt.ip, lane))
        self.port.delete_filter(flt)
        after = len(self._lane_filters(flt.ip, lane))
        self.oplog.record('del', flt.iface, flt.ip, f'u32-{flt.direction}',
                          lane, 'SUCCESS', before, after, context)

    def _add_filter(self, ip, direction, lane, context):
        before = len(self._lane_filters(ip, lane))
        flt = self.port.add_u32_filter(self.lan, ip, direction,
                                       LANE_CLASSES[lane], LANE_PRIO)
        after = len(self._lane_filters(ip, lane))
        self.oplog.record('add', self.lan, ip, f'u32-{direction}', lane,
                          'SUCCESS' if after > before else 'UNVERIFIED',
                          before, after, context)
        return flt

    def _del_mark(self, rule, context):
        before = len(self._marks(rule.ip))
        self.port.delete_mark(rule)
        self.oplog.record('del', NFT, rule.ip, f'mark-{rule.chain}',
                          Lane.FAST, 'SUCCESS', before, before - 1, context)

    def _add_mark(self, ip, chain, direction, context):
        before = len(self._marks(ip))
        self.port.add_mark(chain, direction, ip, self.fast_mark)
        after = len(self._marks(ip))
        self.oplog.record('add', NFT, ip, f'mark-{chain}', Lane.FAST,
                          'SUCCESS' if after > before else 'UNVERIFIED',
                          before, after, context)

    def _del_redirect(self, rule, context):
        before = len(self._redirects(rule.ip))
        self.port.delete_dns_redirect(rule)
        self.oplog.record('del', NFT, rule.ip, f'dns-{rule.proto}', '-',
                          'SUCCESS', before, before - 1, context)

    # Lane removal

    def remove_fast(self, ip, context='lane change'):
        rules = self._marks(ip)
        for rule in rules:
            self._del_mark(rule, context)
        return len(rules)

    def remove_lane_filters(self, ip, lane, context='lane change'):
        flts = self._lane_filters(ip, lane)
        for flt in flts:
            self.drop_filter(flt, lane, context)
        return len(flts)

    def _ensure_pair(self, ip, lane, context):
        '''Exactly one dst and one src filter for ip in lane.'''
        for direction in (DIR_DST, DIR_SRC):
            flts = [f for f in self._lane_filters(ip, lane)
                    if f.direction == direction]
            for extra in flts[1:]:
                self.drop_filter(extra, lane, 'duplicate')
            if not flts:
                self._add_filter(ip, direction, lane, context)

    def _verify_pair(self, ip, lane):
        directions = sorted(f.direction for f in self._lane_filters(ip, lane))
        if directions != sorted((DIR_DST, DIR_SRC)):
            raise EnforcementFailure(
                ip, f'{lane} filters not present after install '
                    f'(found {directions or "none"})')

    # Lanes

    def apply_fast(self, ip):
        try:
            self.remove_lane_filters(ip, Lane.SLOW, 'moving to fast')
            marks = self._marks(ip)
            for chain, direction in MARK_CHAINS:
                found = [r for r in marks
                         if r.chain == chain and r.direction == direction]
                for extra in found[1:]:
                    self._del_mark(extra, 'duplicate')
                if not found:
                    self._add_mark(ip, chain, direction, 'apply fast')
            present = {(r.chain, r.direction) for r in self._marks(ip)}
        except KernelError as e:
            raise EnforcementFailure(ip, f'fast lane: {e}')
        missing = set(MARK_CHAINS) - present
        if missing:
            raise EnforcementFailure(
                ip, f'mark rules missing after install: '
                    f'{", ".join(sorted(c for c, _ in missing))}')
        logger.debug(f'⚡ {ip} is in the fast lane')

    def apply_slow(self, ip):
        try:
            self.remove_fast(ip, 'moving to slow')
            self._ensure_pair(ip, Lane.SLOW, 'apply slow')
            self._verify_pair(ip, Lane.SLOW)
        except KernelError as e:
            raise EnforcementFailure(ip, f'slow lane: {e}')
        logger.debug(f'🐢 {ip} is in the slow lane')

    def apply_guest(self, ip, mac, force=False):
        '''
        Steers ip to the guest lane and caches the (dst, src) handle pair
        under mac. Returns True when rules were (re)installed, False when the
        cached pair was still in place.
        '''
        try:
            return self._apply_guest(ip, mac, force)
        except KernelError as e:
            self.session.drop_handles(mac)
            raise EnforcementFailure(ip, f'guest lane: {e}')

    def _apply_guest(self, ip, mac, force):
        current = self._lane_filters(ip, Lane.GUEST)
        by_handle = {f.handle: f for f in current}
        cached = self.session.get_handles(mac, ip)
        if cached is None and current:
            dst = [f.handle for f in current if f.direction == DIR_DST]
            src = [f.handle for f in current if f.direction == DIR_SRC]
            if len(dst) == 1 and len(src) == 1:
                cached = (dst[0], src[0])
                logger.debug(f'🔎 Recovered guest handles for {mac} from '
                             f'filter dump')

        conflicts = bool(self._marks(ip) or self._lane_filters(ip, Lane.SLOW))
        if cached and not force and not conflicts and len(current) == 2:
            dst, src = by_handle.get(cached[0]), by_handle.get(cached[1])
            if dst and src and dst.direction == DIR_DST and \
               src.direction == DIR_SRC:
                self.session.set_handles(mac, ip, *cached)
                logger.debug(f'✅ Guest {ip} ({mac}) already in place')
                return False

        # Everything previously installed for this device goes, by handle
        for flt in current:
            self.drop_filter(flt, Lane.GUEST, f'reinstall for {mac}')
        self.remove_fast(ip, 'guest override')
        self.remove_lane_filters(ip, Lane.SLOW, 'guest override')

        dst = self._add_filter(ip, DIR_DST, Lane.GUEST, f'guest {mac}')
        src = self._add_filter(ip, DIR_SRC, Lane.GUEST, f'guest {mac}')
        self.session.set_handles(mac, ip, dst.handle, src.handle)

        installed = {f.handle for f in self._lane_filters(ip, Lane.GUEST)}
        if dst.handle not in installed or src.handle not in installed:
            self.session.drop_handles(mac)
            raise EnforcementFailure(
                ip, f'guest filters not present after install for {mac}')
        logger.info(f'👤 Guest {ip} ({mac}) limited to the guest lane')
        return True

    # DNS

    def apply_dns_filter(self, ip):
        try:
            existing = self._redirects(ip)
            good = sorted(r.proto for r in existing
                          if r.resolver == self.resolver)
            if good == sorted(DNS_PROTOCOLS) and len(existing) == 2: return
            for rule in existing:
                self._del_redirect(rule, 'replace')
            for proto in DNS_PROTOCOLS:
                before = len(self._redirects(ip))
                self.port.add_dns_redirect(ip, proto, self.resolver)
                after = len(self._redirects(ip))
                self.oplog.record('add', NFT, ip, f'dns-{proto}', '-',
                                  'SUCCESS' if after > before
                                  else 'UNVERIFIED', before, after,
                                  f'to {self.resolver}')
            protos = sorted(r.proto for r in self._redirects(ip))
        except KernelError as e:
            raise EnforcementFailure(ip, f'dns filter: {e}')
        if protos != sorted(DNS_PROTOCOLS):
            raise EnforcementFailure(ip, 'dns redirection not present')
        logger.info(f'🛡️ DNS filtering enabled for {ip}')

    def remove_dns_filter(self, ip, context='dns open'):
        try:
            rules = self._redirects(ip)
            for rule in rules:
                self._del_redirect(rule, context)
        except KernelError as e:
            raise EnforcementFailure(ip, f'dns removal: {e}')
        if rules:
            logger.info(f'🌐 DNS filtering removed for {ip}')
        return len(rules)

    # Composite operations

    def enforce(self, ip, decision):
        '''Applies one registered device's lane and DNS posture.'''
        if decision.lane == Lane.FAST:
            self.apply_fast(ip)
        elif decision.lane == Lane.SLOW:
            self.apply_slow(ip)
        else:
            raise ValueError(f'{ip}: guest lane is applied by MAC')
        if decision.dns == DnsPosture.FILTERED:
            self.apply_dns_filter(ip)
        else:
            self.remove_dns_filter(ip)

    def clear_ip(self, ip, context='stale', lanes=(Lane.SLOW, Lane.GUEST)):
        '''
        Removes the fast marks, the filters steering ip into lanes and the
        DNS redirects for ip. Returns the number of rules removed.
        '''
        try:
            removed = self.remove_fast(ip, context)
            for lane in lanes:
                removed += self.remove_lane_filters(ip, lane, context)
        except KernelError as e:
            raise EnforcementFailure(ip, f'clear: {e}')
        return removed + self.remove_dns_filter(ip, context)
