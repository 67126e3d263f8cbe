import collections
import logging

logger = logging.getLogger(__name__)


class Lane:
    FAST = 'fast'
    SLOW = 'slow'
    GUEST = 'guest'
    ALL = (FAST, SLOW, GUEST)


class DnsPosture:
    FILTERED = 'filtered'
    OPEN = 'open'


AGE_GROUP_CHILD = 'child'

Decision = collections.namedtuple('Decision', ['lane', 'dns'])

# One device entry of a control plane snapshot
PolicyEntry = collections.namedtuple('PolicyEntry',
                                     ['ip', 'fast', 'age_group'])


class PolicySnapshot:
    '''
    Desired state for one household, as returned by the control plane. It is
    always taken whole: a new snapshot replaces the previous one outright.
    '''
    def __init__(self, entries=()):
        self.by_ip = {}
        for e in entries:
            self.by_ip[e.ip] = e

    def get(self, ip):
        return self.by_ip.get(ip)

    def ips(self):
        return set(self.by_ip)

    def __iter__(self):
        return iter(sorted(self.by_ip.values()))

    def __len__(self):
        return len(self.by_ip)


def classify(registered, entry=None):
    '''
    Decides lane and DNS posture for one device. Unregistered devices are
    guests no matter what the snapshot says; guests are not managed by the
    household, so their DNS is left open.
    '''
    if not registered:
        return Decision(Lane.GUEST, DnsPosture.OPEN)
    lane = Lane.FAST if entry is not None and entry.fast else Lane.SLOW
    dns = DnsPosture.OPEN
    if entry is not None and \
       str(entry.age_group or '').lower() == AGE_GROUP_CHILD:
        dns = DnsPosture.FILTERED
    return Decision(lane, dns)


def plan_devices(snapshot, leases, registry):
    '''
    Classifies every device in the snapshot. A snapshot IP that is currently
    leased to an unregistered MAC belongs to the guest path and is left out.
    IPs the control plane knows about but which hold no lease (static
    addressing, device offline) are treated as household devices.
    Returns {ip: Decision}.
    '''
    leased_by = {lease.ip: lease.mac for lease in leases}
    plan = {}
    for entry in snapshot:
        mac = leased_by.get(entry.ip)
        registered = mac is None or registry.is_registered(mac)
        if not registered:
            logger.info(f'👤 {entry.ip} ({mac}) is leased to an unregistered '
                        f'device; leaving it to guest handling')
            continue
        plan[entry.ip] = classify(True, entry)
    return plan
