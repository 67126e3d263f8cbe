'''
Lane hierarchy on each shaped interface:

    1:    htb root qdisc, unclassified traffic goes to the fast lane (10)
    1:1   root class at total_speed
    1:10  fast    1:20 guest    1:30 slow     (rate = ceil, sfq leaf each)
    fw filter: packets carrying fast_mark go to 1:10

The tree is compared against the kernel and only the differences are
repaired. Replacing the root qdisc is the one destructive repair since it
takes every class and filter with it.
'''
import collections
import logging

from .classifier import Lane
from .config import parse_rate
from .errors import KernelError, TopologyFailure
from .kernel import ROOT

logger = logging.getLogger(__name__)

ROOT_HANDLE = '1:'
DEFAULT_ROOT_HANDLE = '0:'
ROOT_CLASS = '1:1'
DEFAULT_CLASS = '10'
FW_PRIO = 1
LANE_PRIO = 2

LANE_CLASSES = {
    Lane.FAST: '1:10',
    Lane.GUEST: '1:20',
    Lane.SLOW: '1:30',
}

# Repair plan actions
REPLACE_ROOT = 'replace-root'
SET_DEFAULT = 'set-default'
SET_CLASS = 'set-class'
SET_LEAF = 'set-leaf'
ADD_FW = 'add-fw'
DEL_FW = 'del-fw'

RepairStep = collections.namedtuple('RepairStep',
                                    ['action', 'iface', 'target', 'detail'])


class TopologyReport:
    def __init__(self):
        self.steps = []
        self.destructive = set()

    @property
    def healthy(self):
        return not self.steps

    @property
    def reassert_guests(self):
        '''Guest filters went down with a replaced root and need reinstalling.'''
        return bool(self.destructive)


class TopologyManager:
    def __init__(self, port, cfg, oplog):
        self.port = port
        self.oplog = oplog
        self.interfaces = (cfg.lan_interface, cfg.wan_interface)
        self.fast_mark = cfg.fast_mark
        self.total = cfg.total_speed
        self.lane_rates = {
            Lane.FAST: cfg.fast_speed,
            Lane.GUEST: cfg.guest_speed,
            Lane.SLOW: cfg.slow_speed,
        }

    def desired_classes(self):
        '''{classid: (parent, rate)}'''
        out = {ROOT_CLASS: (ROOT_HANDLE, self.total)}
        for lane, classid in LANE_CLASSES.items():
            out[classid] = (ROOT_CLASS, self.lane_rates[lane])
        return out

    def plan(self, iface):
        '''
        Lists the repairs needed to bring iface to the desired tree. An empty
        list means the interface is healthy.
        '''
        qdiscs = self.port.list_qdiscs(iface)
        root = next((q for q in qdiscs if q.parent == ROOT), None)
        desired = self.desired_classes()
        fw_step = RepairStep(ADD_FW, iface, LANE_CLASSES[Lane.FAST],
                             self.fast_mark)

        if root is None or root.kind != 'htb' or root.handle != ROOT_HANDLE:
            # A kernel default root (handle 0:) holds nothing to preserve
            if root is None or root.handle == DEFAULT_ROOT_HANDLE:
                found = 'none'
            else:
                found = f'{root.kind} {root.handle}'
            steps = [RepairStep(REPLACE_ROOT, iface, ROOT_HANDLE, found)]
            steps += [RepairStep(SET_CLASS, iface, c, desired[c])
                      for c in sorted(desired)]
            steps += [RepairStep(SET_LEAF, iface, c, 'sfq')
                      for c in sorted(LANE_CLASSES.values())]
            return steps + [fw_step]

        steps = []
        if root.default != DEFAULT_CLASS:
            steps.append(RepairStep(SET_DEFAULT, iface, ROOT_HANDLE,
                                    DEFAULT_CLASS))
        classes = {c.classid: c for c in self.port.list_classes(iface)}
        for classid in sorted(desired):
            parent, rate = desired[classid]
            have = classes.get(classid)
            bits = parse_rate(rate)
            # The kernel reports the parent of the top class as root
            have_parent = have.parent if have else None
            if have_parent == ROOT: have_parent = ROOT_HANDLE
            if have is None or have_parent != parent or \
               have.rate != bits or have.ceil != bits:
                steps.append(RepairStep(SET_CLASS, iface, classid,
                                        desired[classid]))
        leaves = {q.parent: q for q in qdiscs}
        for classid in sorted(LANE_CLASSES.values()):
            leaf = leaves.get(classid)
            if leaf is None or leaf.kind != 'sfq':
                steps.append(RepairStep(SET_LEAF, iface, classid, 'sfq'))

        have_fw = False
        for f in self.port.list_filters(iface):
            if f.kind != 'fw' or f.mark != self.fast_mark: continue
            if f.flowid == LANE_CLASSES[Lane.FAST] and not have_fw:
                have_fw = True
            else:
                steps.append(RepairStep(DEL_FW, iface, f.flowid, f))
        if not have_fw:
            steps.append(fw_step)
        return steps

    def _guest_filters(self, iface):
        return [f for f in self.port.list_filters(iface)
                if f.flowid == LANE_CLASSES[Lane.GUEST]]

    def _apply(self, step):
        iface = step.iface
        if step.action == REPLACE_ROOT:
            guests = []
            if step.detail != 'none':
                guests = self._guest_filters(iface)
                self.oplog.snapshot(f'before root rebuild on {iface}', guests)
                try:
                    self.port.delete_root_qdisc(iface)
                except KernelError as e:
                    # ENOENT / EINVAL: built-in default qdisc, nothing to drop
                    if e.code not in (2, 22): raise
            self.port.add_root_qdisc(iface, DEFAULT_CLASS)
            self.oplog.record('rebuild', iface, '-', 'qdisc', '-', 'SUCCESS',
                              len(guests), 0, f'root was {step.detail}')
        elif step.action == SET_DEFAULT:
            self.port.change_root_default(iface, DEFAULT_CLASS)
        elif step.action == SET_CLASS:
            parent, rate = step.detail
            self.port.set_class(iface, step.target, parent, rate, rate)
        elif step.action == SET_LEAF:
            self.port.set_leaf_qdisc(iface, step.target)
        elif step.action == DEL_FW:
            self.port.delete_filter(step.detail)
            self.oplog.record('del', iface, '-', 'fw', step.target, 'SUCCESS',
                              1, 0, 'misrouted fast mark filter')
        elif step.action == ADD_FW:
            self.port.add_fw_filter(iface, self.fast_mark, step.target,
                                    FW_PRIO)
            self.oplog.record('add', iface, '-', 'fw', Lane.FAST, 'SUCCESS',
                              0, 1, f'mark {self.fast_mark}')

    def ensure_topology(self):
        '''
        Verifies the lane tree on every shaped interface and repairs drift.
        Raises TopologyFailure if the tree cannot be brought into shape.
        '''
        report = TopologyReport()
        for iface in self.interfaces:
            try:
                steps = self.plan(iface)
                if not steps:
                    logger.debug(f'✅ Lane tree on {iface} is healthy')
                    continue
                for step in steps:
                    logger.info(f'🔧 {iface}: {step.action} {step.target}')
                    if step.action == REPLACE_ROOT and step.detail != 'none':
                        report.destructive.add(iface)
                    self._apply(step)
                    report.steps.append(step)
                leftover = self.plan(iface)
            except KernelError as e:
                raise TopologyFailure(f'Cannot repair lane tree on {iface}: '
                                      f'{e}')
            if leftover:
                raise TopologyFailure(
                    f'Lane tree on {iface} still drifts after repair: '
                    f'{", ".join(s.action for s in leftover)}')
            logger.info(f'✅ Lane tree on {iface} repaired '
                        f'({len(steps)} step(s))')
        return report

    def remove_topology(self):
        '''Deletes the root qdisc on every shaped interface (--reset).'''
        for iface in self.interfaces:
            try:
                self.port.delete_root_qdisc(iface)
                logger.info(f'🗑️ Removed lane tree from {iface}')
            except KernelError as e:
                if e.code != 2: raise
