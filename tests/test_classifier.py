from lanekeeper.classifier import (Decision, DnsPosture, Lane, PolicyEntry,
                                  PolicySnapshot, classify, plan_devices)
from lanekeeper.leases import Lease, Registry, Reservation

HOME = '11:22:33:44:55:66'
GUEST = 'aa:bb:cc:dd:ee:ff'


def registry():
    return Registry([Reservation(HOME, '192.168.1.10', 'desktop')])


class TestClassify:
    def test_unregistered_is_guest_regardless_of_snapshot(self):
        entry = PolicyEntry('192.168.1.50', True, 'child')
        assert classify(False, entry) == Decision(Lane.GUEST, DnsPosture.OPEN)

    def test_fast_adult(self):
        entry = PolicyEntry('192.168.1.10', True, 'adult')
        assert classify(True, entry) == Decision(Lane.FAST, DnsPosture.OPEN)

    def test_slow_child(self):
        entry = PolicyEntry('192.168.1.10', False, 'child')
        assert classify(True, entry) == Decision(Lane.SLOW,
                                                 DnsPosture.FILTERED)

    def test_fast_child_is_filtered(self):
        entry = PolicyEntry('192.168.1.10', True, 'Child')
        assert classify(True, entry) == Decision(Lane.FAST,
                                                 DnsPosture.FILTERED)

    def test_registered_without_entry_is_slow(self):
        assert classify(True) == Decision(Lane.SLOW, DnsPosture.OPEN)


class TestPlanDevices:
    def test_plan(self):
        snapshot = PolicySnapshot([
            PolicyEntry('192.168.1.10', True, 'adult'),
            PolicyEntry('192.168.1.20', False, 'child'),
            PolicyEntry('192.168.1.50', True, 'adult'),
        ])
        leases = [
            Lease(1, HOME, '192.168.1.10', 'desktop', None),
            Lease(1, GUEST, '192.168.1.50', 'phone', None),
        ]
        plan = plan_devices(snapshot, leases, registry())
        assert plan == {
            '192.168.1.10': Decision(Lane.FAST, DnsPosture.OPEN),
            # No lease: static address, still a household device
            '192.168.1.20': Decision(Lane.SLOW, DnsPosture.FILTERED),
        }

    def test_snapshot_replaces_wholesale(self):
        first = PolicySnapshot([PolicyEntry('192.168.1.10', True, 'adult')])
        second = PolicySnapshot([PolicyEntry('192.168.1.11', True, 'adult')])
        assert first.ips() == {'192.168.1.10'}
        assert second.ips() == {'192.168.1.11'}
        assert list(plan_devices(second, [], registry())) == ['192.168.1.11']
