import pytest

from lanekeeper.classifier import Decision, DnsPosture, Lane
from lanekeeper.errors import EnforcementFailure
from lanekeeper.kernel import (CHAIN_FORWARD, CHAIN_POSTROUTING,
                               CHAIN_PREROUTING, DIR_DST, DIR_SRC)

from conftest import GUEST_MAC, LAN

IP = '192.168.1.10'
GUEST_IP = '192.168.1.50'


def lane_filters(kernel, ip, flowid):
    return [f for f in kernel.list_filters(LAN)
            if f.ip == ip and f.flowid == flowid]


class TestFastLane:
    def test_marks_all_three_chains(self, engine, shaped):
        engine.apply_fast(IP)
        marks = {(r.chain, r.direction) for r in shaped.list_marks()
                 if r.ip == IP and r.mark == 5}
        assert marks == {(CHAIN_PREROUTING, DIR_DST),
                         (CHAIN_FORWARD, DIR_DST),
                         (CHAIN_POSTROUTING, DIR_SRC)}

    def test_check_before_insert(self, engine, shaped):
        engine.apply_fast(IP)
        before = shaped.mutations
        engine.apply_fast(IP)
        assert shaped.mutations == before
        assert len(shaped.list_marks()) == 3

    def test_duplicate_marks_collapsed(self, engine, shaped):
        engine.apply_fast(IP)
        shaped.add_mark(CHAIN_FORWARD, DIR_DST, IP, 5)
        engine.apply_fast(IP)
        assert len(shaped.list_marks()) == 3

    def test_removes_slow_filters(self, engine, shaped):
        engine.apply_slow(IP)
        engine.apply_fast(IP)
        assert lane_filters(shaped, IP, '1:30') == []


class TestSlowLane:
    def test_installs_filter_pair(self, engine, shaped):
        engine.apply_slow(IP)
        flts = lane_filters(shaped, IP, '1:30')
        assert sorted(f.direction for f in flts) == [DIR_DST, DIR_SRC]
        assert all(f.prio == 2 for f in flts)

    def test_exclusive_with_fast(self, engine, shaped):
        engine.apply_fast(IP)
        engine.apply_slow(IP)
        assert [r for r in shaped.list_marks() if r.ip == IP] == []

    def test_idempotent(self, engine, shaped):
        engine.apply_slow(IP)
        before = shaped.mutations
        engine.apply_slow(IP)
        assert shaped.mutations == before
        assert len(lane_filters(shaped, IP, '1:30')) == 2

    def test_unverified_install_fails(self, engine, shaped):
        shaped.swallow.add(IP)
        with pytest.raises(EnforcementFailure) as e:
            engine.apply_slow(IP)
        assert e.value.ip == IP


class TestGuestLane:
    def test_installs_and_caches_handles(self, engine, shaped, session):
        assert engine.apply_guest(GUEST_IP, GUEST_MAC) is True
        flts = lane_filters(shaped, GUEST_IP, '1:20')
        by_dir = {f.direction: f.handle for f in flts}
        assert session.get_handles(GUEST_MAC, GUEST_IP) == \
            (by_dir[DIR_DST], by_dir[DIR_SRC])

    def test_cached_pair_in_place_is_a_no_op(self, engine, shaped):
        engine.apply_guest(GUEST_IP, GUEST_MAC)
        before = shaped.mutations
        assert engine.apply_guest(GUEST_IP, GUEST_MAC) is False
        assert shaped.mutations == before

    def test_force_reinstalls_by_handle(self, engine, shaped, session):
        engine.apply_guest(GUEST_IP, GUEST_MAC)
        old = session.get_handles(GUEST_MAC, GUEST_IP)
        # Unrelated guest must survive the reinstall
        engine.apply_guest('192.168.1.51', '02:00:00:00:00:01')
        assert engine.apply_guest(GUEST_IP, GUEST_MAC, force=True) is True
        new = session.get_handles(GUEST_MAC, GUEST_IP)
        assert set(new).isdisjoint(old)
        assert len(lane_filters(shaped, GUEST_IP, '1:20')) == 2
        assert len(lane_filters(shaped, '192.168.1.51', '1:20')) == 2

    def test_recovers_handles_from_dump(self, engine, shaped, session):
        engine.apply_guest(GUEST_IP, GUEST_MAC)
        session.clear_handles()
        before = shaped.mutations
        assert engine.apply_guest(GUEST_IP, GUEST_MAC) is False
        assert shaped.mutations == before
        assert session.get_handles(GUEST_MAC, GUEST_IP) is not None

    def test_ip_change_invalidates_cache(self, engine, shaped, session):
        engine.apply_guest(GUEST_IP, GUEST_MAC)
        engine.apply_guest('192.168.1.60', GUEST_MAC)
        assert session.handles[GUEST_MAC]['ip'] == '192.168.1.60'
        assert len(lane_filters(shaped, '192.168.1.60', '1:20')) == 2

    def test_removes_conflicting_rules(self, engine, shaped):
        engine.apply_fast(GUEST_IP)
        engine.apply_guest(GUEST_IP, GUEST_MAC)
        assert [r for r in shaped.list_marks() if r.ip == GUEST_IP] == []
        engine.apply_slow(GUEST_IP)
        engine.apply_guest(GUEST_IP, GUEST_MAC)
        assert lane_filters(shaped, GUEST_IP, '1:30') == []

    def test_verification_failure(self, engine, shaped, session):
        shaped.swallow.add(GUEST_IP)
        with pytest.raises(EnforcementFailure):
            engine.apply_guest(GUEST_IP, GUEST_MAC)
        assert session.get_handles(GUEST_MAC, GUEST_IP) is None


class TestDns:
    def test_redirects_udp_and_tcp(self, engine, shaped):
        engine.apply_dns_filter(IP)
        rules = shaped.list_dns_redirects()
        assert sorted(r.proto for r in rules) == ['tcp', 'udp']
        assert {r.resolver for r in rules} == {'208.67.222.123'}

    def test_idempotent(self, engine, shaped):
        engine.apply_dns_filter(IP)
        before = shaped.mutations
        engine.apply_dns_filter(IP)
        assert shaped.mutations == before
        assert len(shaped.list_dns_redirects()) == 2

    def test_wrong_resolver_replaced(self, engine, shaped):
        shaped.add_dns_redirect(IP, 'udp', '9.9.9.9')
        engine.apply_dns_filter(IP)
        assert {r.resolver for r in shaped.list_dns_redirects()} == \
            {'208.67.222.123'}
        assert len(shaped.list_dns_redirects()) == 2

    def test_remove(self, engine, shaped):
        engine.apply_dns_filter(IP)
        assert engine.remove_dns_filter(IP) == 2
        assert shaped.list_dns_redirects() == []
        assert engine.remove_dns_filter(IP) == 0


def test_enforce_and_clear(engine, shaped, oplog):
    engine.enforce(IP, Decision(Lane.SLOW, DnsPosture.FILTERED))
    assert engine.clear_ip(IP) == 4
    assert lane_filters(shaped, IP, '1:30') == []
    assert shaped.list_dns_redirects() == []
    adds = [e for e in oplog.entries
            if e['action'] == 'add' and e['ip'] == IP]
    assert adds[0]['before'] == 0 and adds[0]['after'] == 1


def test_enforce_refuses_guest_decision(engine):
    with pytest.raises(ValueError):
        engine.enforce(IP, Decision(Lane.GUEST, DnsPosture.OPEN))


def test_clear_limited_to_lanes(engine, shaped):
    engine.apply_guest(GUEST_IP, GUEST_MAC)
    engine.apply_dns_filter(GUEST_IP)
    assert engine.clear_ip(GUEST_IP, lanes=(Lane.SLOW,)) == 2
    assert len(lane_filters(shaped, GUEST_IP, '1:20')) == 2
    assert engine.clear_ip(GUEST_IP) == 2
    assert lane_filters(shaped, GUEST_IP, '1:20') == []
