import logging

from .errors import KernelError
from .kernel import (DnsRedirect, KernelPort, MarkRule, Qdisc, ROOT, TcFilter,
                     TrafficClass, format_handle)
from .config import parse_rate

logger = logging.getLogger(__name__)

U32_BASE_HANDLE = 0x80000800


class MemoryKernel(KernelPort):
    '''
    In-memory kernel used by the unit tests and, seeded from the real
    kernel, by dry runs. Mirrors the behaviours the engine relies on: handles
    are assigned by the "kernel", deleting the root qdisc wipes the whole tree
    including every filter, and rules on unknown interfaces fail.
    '''
    def __init__(self, interfaces=('br-lan', 'eth1')):
        self.interfaces = set(interfaces)
        self.qdiscs = {i: [] for i in interfaces}
        self.classes = {i: {} for i in interfaces}
        self.filters = {i: {} for i in interfaces}
        self.marks = []
        self.dns = []
        self.firewall_ready = False
        self.next_u32 = {i: U32_BASE_HANDLE for i in interfaces}
        self.next_rule_handle = 2
        # IPs whose filter adds are acknowledged but never show up
        self.swallow = set()
        # Number of mutating calls, for idempotence assertions
        self.mutations = 0

    def _iface(self, iface):
        if iface not in self.interfaces:
            raise KernelError(f'Cannot find device "{iface}"', code=19)
        return iface

    def _root(self, iface):
        for q in self.qdiscs[iface]:
            if q.parent == ROOT: return q
        return None

    def _require_root(self, iface):
        if not self._root(iface):
            raise KernelError(f'No root qdisc on {iface}', code=2)

    def _rule_handle(self):
        self.next_rule_handle += 1
        return self.next_rule_handle

    # Traffic control tree

    def list_qdiscs(self, iface):
        return list(self.qdiscs[self._iface(iface)])

    def list_classes(self, iface):
        return sorted(self.classes[self._iface(iface)].values())

    def add_root_qdisc(self, iface, default):
        self._iface(iface)
        root = self._root(iface)
        if root and root.handle != '0:':
            raise KernelError(f'Root qdisc exists on {iface}', code=17)
        self.mutations += 1
        # Grafts over the built-in default qdisc
        self.qdiscs[iface] = [q for q in self.qdiscs[iface] if q is not root]
        self.qdiscs[iface].append(Qdisc(iface, '1:', ROOT, 'htb', default))

    def change_root_default(self, iface, default):
        self._iface(iface)
        root = self._root(iface)
        if not root or root.kind != 'htb':
            raise KernelError(f'No HTB root on {iface}', code=2)
        self.mutations += 1
        self.qdiscs[iface] = [q._replace(default=default) if q is root else q
                              for q in self.qdiscs[iface]]

    def delete_root_qdisc(self, iface):
        self._iface(iface)
        if not self._root(iface):
            raise KernelError(f'No root qdisc on {iface}', code=2)
        self.mutations += 1
        self.qdiscs[iface] = []
        self.classes[iface] = {}
        self.filters[iface] = {}

    def set_class(self, iface, classid, parent, rate, ceil):
        self._iface(iface)
        self._require_root(iface)
        if parent != '1:' and parent not in self.classes[iface]:
            raise KernelError(f'Parent class {parent} missing on {iface}',
                              code=2)
        self.mutations += 1
        # The kernel reports a class attached to the qdisc itself as root
        if parent == '1:': parent = ROOT
        self.classes[iface][classid] = TrafficClass(
            iface, classid, parent, parse_rate(rate), parse_rate(ceil))

    def set_leaf_qdisc(self, iface, parent):
        self._iface(iface)
        if parent not in self.classes[iface]:
            raise KernelError(f'Class {parent} missing on {iface}', code=2)
        self.mutations += 1
        handle = parent.split(':')[1] + ':'
        self.qdiscs[iface] = [q for q in self.qdiscs[iface]
                              if q.parent != parent]
        self.qdiscs[iface].append(Qdisc(iface, handle, parent, 'sfq', None))

    # Classifier filters

    def list_filters(self, iface):
        return sorted(self.filters[self._iface(iface)].values(),
                      key=lambda f: (f.prio, f.handle))

    def add_u32_filter(self, iface, ip, direction, flowid, prio):
        self._iface(iface)
        self._require_root(iface)
        self.mutations += 1
        handle = self.next_u32[iface]
        self.next_u32[iface] += 1
        flt = TcFilter(iface, handle, prio, 'u32', ip, direction, flowid, None)
        if ip not in self.swallow:
            self.filters[iface][handle] = flt
        return flt

    def add_fw_filter(self, iface, mark, flowid, prio):
        self._iface(iface)
        self._require_root(iface)
        for f in self.filters[iface].values():
            if f.kind == 'fw' and f.mark == mark and f.prio == prio:
                raise KernelError(f'fw filter {mark} exists on {iface}',
                                  code=17)
        self.mutations += 1
        flt = TcFilter(iface, mark, prio, 'fw', None, None, flowid, mark)
        self.filters[iface][('fw', mark, prio)] = flt
        return flt

    def delete_filter(self, flt):
        self._iface(flt.iface)
        key = flt.handle if flt.kind == 'u32' else ('fw', flt.mark, flt.prio)
        if key not in self.filters[flt.iface]:
            raise KernelError(f'Filter {format_handle(flt.handle)} not found '
                              f'on {flt.iface}', code=2)
        self.mutations += 1
        del self.filters[flt.iface][key]

    # Firewall

    def ensure_firewall(self):
        self.firewall_ready = True

    def flush_firewall(self):
        self.mutations += 1
        self.marks = []
        self.dns = []

    def _require_firewall(self):
        if not self.firewall_ready:
            raise KernelError('Firewall table not initialised', code=2)

    def list_marks(self):
        return list(self.marks)

    def add_mark(self, chain, direction, ip, mark):
        self._require_firewall()
        self.mutations += 1
        rule = MarkRule(chain, direction, ip, mark, self._rule_handle())
        self.marks.insert(0, rule)
        return rule

    def delete_mark(self, rule):
        if rule not in self.marks:
            raise KernelError(f'Mark rule {rule.handle} not found', code=2)
        self.mutations += 1
        self.marks.remove(rule)

    def list_dns_redirects(self):
        return list(self.dns)

    def add_dns_redirect(self, ip, proto, resolver):
        self._require_firewall()
        self.mutations += 1
        rule = DnsRedirect(ip, proto, resolver, self._rule_handle())
        self.dns.append(rule)
        return rule

    def delete_dns_redirect(self, rule):
        if rule not in self.dns:
            raise KernelError(f'DNS rule {rule.handle} not found', code=2)
        self.mutations += 1
        self.dns.remove(rule)

    # Helpers for building a known starting state

    def load_from(self, port, interfaces):
        '''Copies the observable state of another port into memory.'''
        for iface in interfaces:
            self.interfaces.add(iface)
            self.qdiscs[iface] = list(port.list_qdiscs(iface))
            self.classes[iface] = {c.classid: c
                                   for c in port.list_classes(iface)}
            self.filters[iface] = {}
            top = U32_BASE_HANDLE
            for f in port.list_filters(iface):
                if f.kind == 'u32':
                    self.filters[iface][f.handle] = f
                    top = max(top, f.handle + 1)
                else:
                    self.filters[iface][('fw', f.mark, f.prio)] = f
            self.next_u32[iface] = top
        self.marks = list(port.list_marks())
        self.dns = list(port.list_dns_redirects())
        handles = [r.handle for r in self.marks + self.dns]
        self.next_rule_handle = max(handles + [self.next_rule_handle])
        self.firewall_ready = True


class DryRunKernel(MemoryKernel):
    '''
    Reads the real kernel once, then applies every change to an in-memory
    copy while logging what would have been done. Verification inside the
    engine therefore behaves exactly as it would for real.
    '''
    MUTATORS = ('add_root_qdisc', 'change_root_default', 'delete_root_qdisc',
                'set_class', 'set_leaf_qdisc', 'add_u32_filter',
                'add_fw_filter', 'delete_filter', 'flush_firewall',
                'add_mark', 'delete_mark', 'add_dns_redirect',
                'delete_dns_redirect')

    def __init__(self, real, interfaces):
        super().__init__(interfaces)
        self.real = real
        self.load_from(real, interfaces)

    def __getattribute__(self, name):
        attr = super().__getattribute__(name)
        if name in DryRunKernel.MUTATORS:
            def traced(*args, **kwargs):
                shown = ', '.join([repr(a) for a in args] +
                                  [f'{k}={v!r}' for k, v in kwargs.items()])
                logger.info(f'🧪 TEST MODE: would {name}({shown})')
                return attr(*args, **kwargs)
            return traced
        return attr

    def close(self):
        self.real.close()
