import logging
import threading
import time

from .classifier import Lane, plan_devices
from .cleaner import StaleCleaner
from .config import MODE_FAST_DEVICES
from .critical import CriticalServices
from .enforcement import EnforcementEngine
from .errors import (EnforcementFailure, KernelError, LanekeeperError,
                     LockContention, TopologyFailure, UpstreamUnavailable)
from .guests import GuestManager, LeaseWatcher
from .leases import is_ipv4, normalize_mac, read_leases, read_registry
from .lock import ConcurrencyGuard
from .logs import OperationLog
from .session import Session
from .topology import LANE_CLASSES, TopologyManager

logger = logging.getLogger(__name__)

PASS_FULL = 'full'
PASS_GUEST = 'guest'


class PassReport:
    def __init__(self, kind=PASS_FULL):
        self.kind = kind
        self.started = time.time()
        self.topology = None
        self.upstream_error = None
        self.enforced = {}
        self.failed = {}
        self.critical = []
        self.guests = None
        self.swept_guests = 0
        self.swept_policy = 0

    @property
    def ok(self):
        return self.upstream_error is None and not self.failed and \
            not (self.guests and self.guests.failed)

    def summary(self):
        parts = [f'{len(self.enforced)} device(s) enforced']
        if self.failed: parts.append(f'{len(self.failed)} failed')
        if self.critical: parts.append(f'{len(self.critical)} critical')
        if self.guests: parts.append(f'{len(self.guests.guests)} guest(s)')
        if self.swept_guests or self.swept_policy:
            parts.append(f'{self.swept_guests + self.swept_policy} rule(s) '
                         f'swept')
        if self.upstream_error: parts.append('policy fetch failed')
        return ', '.join(parts)


class Reconciler:
    '''
    Drives reconciliation passes. A full pass converges the lane tree, every
    device in the policy snapshot, critical services and guests, then sweeps
    what is left over. A guest pass (lease file changes) only handles guests.
    Both run under the cross-process lock.
    '''
    def __init__(self, cfg, port, client=None, session=None, guard=None,
                 oplog=None, critical=None):
        self.cfg = cfg
        self.port = port
        self.client = client
        self.session = session if session is not None else Session()
        self.guard = guard or ConcurrencyGuard(cfg.lock_file)
        self.oplog = oplog or OperationLog()
        self.topology = TopologyManager(port, cfg, self.oplog)
        self.engine = EnforcementEngine(port, cfg, self.session, self.oplog)
        self.cleaner = StaleCleaner(self.engine)
        self.guests = GuestManager(self.engine, client, self.session)
        self.critical = critical or CriticalServices(cfg, self.session)

        # Daemon scheduling
        self.cv = threading.Condition()
        self.pending = set()
        self.watcher = None

    def _read_local(self):
        leases = read_leases(self.cfg.lease_file)
        registry = read_registry(self.cfg.registry_file)
        return leases, registry

    def _prepare_kernel(self, report):
        try:
            self.port.ensure_firewall()
        except KernelError as e:
            raise TopologyFailure(f'Cannot set up firewall table: {e}')
        report.topology = self.topology.ensure_topology()
        if report.topology.reassert_guests:
            logger.warning('⚠️ Lane tree was rebuilt, re-asserting guests')
            self.session.clear_handles()

    def fetch_snapshot(self):
        if self.cfg.mode == MODE_FAST_DEVICES:
            return self.client.fetch_fast_devices()
        return self.client.fetch_device_controls()

    def run_pass(self, force=False):
        with self.guard:
            report = PassReport(PASS_FULL)
            leases, registry = self._read_local()
            if force:
                logger.info('💪 Forced pass, ignoring cached guest handles')
                self.session.clear_handles()
            try:
                self._prepare_kernel(report)

                snapshot = None
                try:
                    snapshot = self.fetch_snapshot()
                except UpstreamUnavailable as e:
                    report.upstream_error = str(e)
                    logger.error(f'❌ Policy unavailable, keeping current '
                                 f'device rules: {e}')

                keep = set()
                if snapshot is not None:
                    plan = plan_devices(snapshot, leases, registry)
                    for ip in sorted(plan):
                        try:
                            self.engine.enforce(ip, plan[ip])
                            report.enforced[ip] = plan[ip]
                        except EnforcementFailure as e:
                            logger.error(f'❌ {e}')
                            report.failed[ip] = e.reason
                    keep = self.critical.ips()
                    for ip in sorted(keep - set(plan)):
                        try:
                            self.engine.apply_fast(ip)
                            report.critical.append(ip)
                        except EnforcementFailure as e:
                            logger.error(f'❌ Critical service {e}')
                            report.failed[ip] = e.reason

                report.guests = self.guests.scan(
                    leases, registry,
                    force=force or report.topology.reassert_guests)

                report.swept_guests = self.cleaner.sweep_guests(leases,
                                                                registry)
                if snapshot is not None:
                    report.swept_policy = self.cleaner.sweep_policy(snapshot,
                                                                    keep)
            finally:
                self.session.save()
        logger.info(f'✅ Pass complete: {report.summary()}')
        return report

    def run_guest_pass(self):
        with self.guard:
            report = PassReport(PASS_GUEST)
            leases, registry = self._read_local()
            try:
                self._prepare_kernel(report)
                report.guests = self.guests.scan(
                    leases, registry, force=report.topology.reassert_guests)
                report.swept_guests = self.cleaner.sweep_guests(leases,
                                                                registry)
            finally:
                self.session.save()
        return report

    def apply_guest(self, ip, mac=None):
        '''Manual override: puts one device into the guest lane right now.'''
        if not is_ipv4(ip):
            raise ValueError(f'Invalid IP address "{ip}"')
        if mac is not None and not normalize_mac(mac):
            raise ValueError(f'Invalid MAC address "{mac}"')
        with self.guard:
            if mac is None:
                leases = read_leases(self.cfg.lease_file)
                mac = next((l.mac for l in leases if l.ip == ip), None)
                if mac is None:
                    raise ValueError(f'No lease for {ip}, pass --mac')
            mac = normalize_mac(mac)
            try:
                self._prepare_kernel(PassReport(PASS_GUEST))
                self.engine.apply_guest(ip, mac, force=True)
                self.engine.remove_dns_filter(ip, 'guest dns open')
            finally:
                self.session.save()
        logger.info(f'✅ {ip} ({mac}) placed in the guest lane')

    def reset(self):
        '''Removes every rule and the lane tree lanekeeper manages.'''
        with self.guard:
            self.port.flush_firewall()
            self.topology.remove_topology()
            self.session.clear_handles()
            self.session.save()
        logger.info('🗑️ All managed kernel state removed')

    def status(self):
        '''Read-only view of the managed kernel state.'''
        lanes = {v: k for k, v in LANE_CLASSES.items()}
        out = {'interfaces': {}, 'marks': [], 'dns': [],
               'guest_handles': dict(self.session.handles)}
        for iface in self.topology.interfaces:
            try:
                drift = [f'{s.action} {s.target}'
                         for s in self.topology.plan(iface)]
                filters = self.port.list_filters(iface)
            except KernelError as e:
                out['interfaces'][iface] = {'error': str(e)}
                continue
            by_lane = {lane: [] for lane in Lane.ALL}
            for f in filters:
                if f.kind == 'u32' and f.flowid in lanes:
                    by_lane[lanes[f.flowid]].append(f'{f.ip} ({f.direction})')
            out['interfaces'][iface] = {'drift': drift, 'filters': by_lane}
        mark = self.cfg.fast_mark
        try:
            out['marks'] = sorted({r.ip for r in self.port.list_marks()
                                   if r.mark == mark})
            out['dns'] = sorted({r.ip for r in self.port.list_dns_redirects()})
        except KernelError as e:
            out['firewall_error'] = str(e)
        return out

    # Daemon mode

    def trigger(self, kind=PASS_FULL):
        with self.cv:
            self.pending.add(kind)
            self.cv.notify()

    def _run(self, kind, force=False):
        try:
            if kind == PASS_FULL:
                self.run_pass(force=force)
            else:
                self.run_guest_pass()
        except LockContention as e:
            logger.warning(f'⏭️ Skipping {kind} pass: {e}')
        except LanekeeperError as e:
            logger.error(f'❌ {kind} pass failed: {e}')
        except Exception as e:
            # The daemon outlives a broken pass; the next trigger retries
            logger.exception(f'❌ {kind} pass crashed: {e}')

    def serve(self, force=False):
        '''
        Runs passes until the process is told to stop: a full pass every
        poll_interval seconds (or on SIGUSR1) and a guest pass whenever the
        lease file settles after a change. All passes run on this thread.
        '''
        self.watcher = LeaseWatcher(self.cfg.lease_file,
                                    lambda: self.trigger(PASS_GUEST),
                                    self.cfg.debounce_seconds)
        self.watcher.start()
        logger.info(f'🚀 Daemon active, full pass every '
                    f'{self.cfg.poll_interval:.0f}s')
        try:
            self._run(PASS_FULL, force=force)
            next_full = time.time() + self.cfg.poll_interval
            while True:
                with self.cv:
                    while not self.pending:
                        tmo = next_full - time.time()
                        if tmo <= 0:
                            self.pending.add(PASS_FULL)
                            break
                        self.cv.wait(timeout=tmo)
                    pending, self.pending = self.pending, set()
                if PASS_FULL in pending:
                    self._run(PASS_FULL)
                    next_full = time.time() + self.cfg.poll_interval
                elif PASS_GUEST in pending:
                    self._run(PASS_GUEST)
        finally:
            self.watcher.stop()
            self.session.save()
