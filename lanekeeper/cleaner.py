import logging

from .classifier import Lane
from .errors import EnforcementFailure, KernelError
from .topology import LANE_CLASSES

logger = logging.getLogger(__name__)


class StaleCleaner:
    '''
    Runs once every live device has been reasserted and removes what is left
    over: guest filters for devices that are no longer leased guests, and
    fast/slow/DNS rules for addresses the control plane no longer lists.
    '''
    def __init__(self, engine):
        self.engine = engine
        self.port = engine.port
        self.session = engine.session
        self.lan = engine.lan

    def sweep_guests(self, leases, registry):
        guest_ips = {l.ip for l in leases if not registry.is_registered(l.mac)}
        removed = 0
        for flt in self.port.list_filters(self.lan):
            if flt.flowid != LANE_CLASSES[Lane.GUEST] or flt.kind != 'u32':
                continue
            if flt.ip in guest_ips: continue
            try:
                self.engine.drop_filter(flt, Lane.GUEST, 'stale guest')
                removed += 1
            except KernelError as e:
                logger.error(f'⚠️ Cannot remove stale guest filter for '
                             f'{flt.ip}: {e}')
        self.session.retain({l.mac for l in leases})
        if removed:
            logger.info(f'🧹 Removed {removed} stale guest filter(s)')
        return removed

    def managed_ips(self):
        '''Every IP that currently holds a mark, slow filter or redirect.'''
        ips = {r.ip for r in self.port.list_marks()
               if r.mark == self.engine.fast_mark}
        ips |= {f.ip for f in self.port.list_filters(self.lan)
                if f.flowid == LANE_CLASSES[Lane.SLOW] and f.ip}
        ips |= {r.ip for r in self.port.list_dns_redirects()}
        return ips

    def sweep_policy(self, snapshot, keep=()):
        '''
        Removes fast marks, slow filters and DNS redirects for addresses
        that are neither in the snapshot nor in keep.
        '''
        wanted = snapshot.ips() | set(keep)
        removed = 0
        for ip in sorted(self.managed_ips() - wanted):
            try:
                count = self.engine.clear_ip(ip, 'not in policy',
                                             lanes=(Lane.SLOW,))
            except (KernelError, EnforcementFailure) as e:
                logger.error(f'⚠️ Cannot clean up {ip}: {e}')
                continue
            logger.info(f'🧹 Removed {count} rule(s) for {ip}, no longer '
                        f'in policy')
            removed += count
        return removed
