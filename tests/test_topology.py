import pytest

from lanekeeper.errors import TopologyFailure
from lanekeeper.kernel import DIR_DST, DIR_SRC, Qdisc, ROOT, TrafficClass
from lanekeeper.memkernel import MemoryKernel
from lanekeeper.topology import (ADD_FW, DEL_FW, REPLACE_ROOT, SET_CLASS,
                                 SET_DEFAULT, SET_LEAF, TopologyManager)

from conftest import LAN, WAN


@pytest.fixture
def manager(kernel, cfg, oplog):
    return TopologyManager(kernel, cfg, oplog)


def actions(report_or_steps):
    steps = getattr(report_or_steps, 'steps', report_or_steps)
    return [s.action for s in steps]


class TestBuild:
    def test_builds_full_tree_on_both_interfaces(self, manager, kernel):
        report = manager.ensure_topology()
        assert not report.healthy
        # Nothing was there to destroy
        assert not report.reassert_guests
        for iface in (LAN, WAN):
            root = [q for q in kernel.list_qdiscs(iface) if q.parent == ROOT]
            assert root == [Qdisc(iface, '1:', ROOT, 'htb', '10')]
            classes = {c.classid: c for c in kernel.list_classes(iface)}
            assert sorted(classes) == ['1:1', '1:10', '1:20', '1:30']
            assert classes['1:1'].rate == 1_000_000_000
            assert classes['1:10'].rate == classes['1:10'].ceil == 100_000_000
            assert classes['1:30'].rate == 10_000_000
            assert classes['1:20'].parent == '1:1'
            leaves = sorted(q.parent for q in kernel.list_qdiscs(iface)
                            if q.kind == 'sfq')
            assert leaves == ['1:10', '1:20', '1:30']
            fw = [f for f in kernel.list_filters(iface) if f.kind == 'fw']
            assert len(fw) == 1
            assert fw[0].mark == 5 and fw[0].flowid == '1:10'
            assert fw[0].prio == 1

    def test_healthy_tree_is_left_alone(self, manager, kernel):
        manager.ensure_topology()
        before = kernel.mutations
        report = manager.ensure_topology()
        assert report.healthy
        assert kernel.mutations == before


class TestRepair:
    @pytest.fixture(autouse=True)
    def built(self, manager):
        manager.ensure_topology()

    def add_guest(self, kernel, ip='192.168.1.50'):
        kernel.add_u32_filter(LAN, ip, DIR_DST, '1:20', 2)
        kernel.add_u32_filter(LAN, ip, DIR_SRC, '1:20', 2)

    def test_wrong_default_changed_in_place(self, manager, kernel):
        self.add_guest(kernel)
        kernel.change_root_default(LAN, '30')
        report = manager.ensure_topology()
        assert actions(report) == [SET_DEFAULT]
        assert not report.reassert_guests
        assert len([f for f in kernel.list_filters(LAN)
                    if f.flowid == '1:20']) == 2

    def test_wrong_rate_replaces_one_class(self, manager, kernel):
        kernel.classes[WAN]['1:30'] = TrafficClass(WAN, '1:30', '1:1',
                                                   1_000_000, 1_000_000)
        assert actions(manager.plan(WAN)) == [SET_CLASS]
        manager.ensure_topology()
        assert kernel.classes[WAN]['1:30'].rate == 10_000_000

    def test_missing_leaf_and_fw_filter(self, manager, kernel):
        kernel.qdiscs[LAN] = [q for q in kernel.qdiscs[LAN]
                              if q.parent != '1:20']
        for f in kernel.list_filters(LAN):
            if f.kind == 'fw': kernel.delete_filter(f)
        assert actions(manager.plan(LAN)) == [SET_LEAF, ADD_FW]
        manager.ensure_topology()
        assert manager.plan(LAN) == []

    def test_misrouted_fw_filter(self, manager, kernel):
        for f in kernel.list_filters(WAN):
            if f.kind == 'fw': kernel.delete_filter(f)
        kernel.add_fw_filter(WAN, 5, '1:30', 1)
        assert actions(manager.plan(WAN)) == [DEL_FW, ADD_FW]
        manager.ensure_topology()
        fw = [f for f in kernel.list_filters(WAN) if f.kind == 'fw']
        assert [f.flowid for f in fw] == ['1:10']

    def test_foreign_root_is_replaced(self, manager, kernel, oplog):
        self.add_guest(kernel)
        kernel.delete_root_qdisc(LAN)
        kernel.qdiscs[LAN] = [Qdisc(LAN, '8001:', ROOT, 'fq_codel', None)]
        report = manager.ensure_topology()
        assert actions(report)[0] == REPLACE_ROOT
        assert report.destructive == {LAN}
        assert report.reassert_guests
        assert manager.plan(LAN) == []

    def test_default_root_is_grafted_over(self, manager, kernel, oplog):
        kernel.delete_root_qdisc(LAN)
        kernel.qdiscs[LAN] = [Qdisc(LAN, '0:', ROOT, 'noqueue', None)]
        steps = manager.plan(LAN)
        assert steps[0].action == REPLACE_ROOT and steps[0].detail == 'none'
        report = manager.ensure_topology()
        assert report.destructive == set()
        assert not report.reassert_guests
        assert not [e for e in oplog.entries if e['action'] == 'snapshot']
        assert manager.plan(LAN) == []

    def test_top_class_parent_reported_as_root(self, manager, kernel):
        assert kernel.classes[LAN]['1:1'].parent == ROOT
        assert manager.plan(LAN) == []
        kernel.classes[LAN]['1:1'] = kernel.classes[LAN]['1:1']._replace(
            parent='1:')
        assert manager.plan(LAN) == []

    def test_lane_class_under_root_is_moved(self, manager, kernel):
        kernel.classes[LAN]['1:10'] = kernel.classes[LAN]['1:10']._replace(
            parent=ROOT)
        steps = manager.plan(LAN)
        assert [(s.action, s.target) for s in steps] == [(SET_CLASS, '1:10')]
        manager.ensure_topology()
        assert kernel.classes[LAN]['1:10'].parent == '1:1'

    def test_rebuild_snapshots_guest_rules(self, manager, kernel, oplog):
        self.add_guest(kernel)
        # Root with the wrong handle forces a rebuild
        kernel.qdiscs[LAN] = [q._replace(handle='2:') if q.parent == ROOT
                              else q for q in kernel.qdiscs[LAN]]
        manager.ensure_topology()
        snap = [e for e in oplog.entries if e['action'] == 'snapshot']
        assert len(snap) == 1
        assert len(snap[0]['rules']) == 2
        assert all('192.168.1.50' in r for r in snap[0]['rules'])
        rebuild = [e for e in oplog.entries if e['action'] == 'rebuild']
        assert rebuild[-1]['before'] == 2 and rebuild[-1]['after'] == 0


def test_kernel_errors_become_topology_failure(cfg, oplog):
    lan_only = MemoryKernel((LAN,))
    with pytest.raises(TopologyFailure):
        TopologyManager(lan_only, cfg, oplog).ensure_topology()


def test_remove_topology(manager, kernel):
    manager.ensure_topology()
    manager.remove_topology()
    assert kernel.list_qdiscs(LAN) == []
    # Already gone is fine
    manager.remove_topology()
