import pytest
from unittest.mock import MagicMock

from lanekeeper.config import Config
from lanekeeper.enforcement import EnforcementEngine
from lanekeeper.logs import OperationLog
from lanekeeper.memkernel import MemoryKernel
from lanekeeper.reconciler import Reconciler
from lanekeeper.session import Session
from lanekeeper.topology import TopologyManager

LAN = 'br-lan'
WAN = 'eth1'

GUEST_MAC = 'aa:bb:cc:dd:ee:ff'
HOME_MAC = '11:22:33:44:55:66'

REGISTRY_TEXT = f'''
config dnsmasq
    option domainneeded '1'

config host
    option name 'desktop'
    option mac '{HOME_MAC}'
    option ip '192.168.1.10'
'''


def make_config(tmp_path, **overrides):
    data = {
        'household_id': 'hh-42',
        'server_url': 'https://control.example.com/',
        'wan_interface': WAN,
        'lease_file': str(tmp_path / 'dhcp.leases'),
        'registry_file': str(tmp_path / 'dhcp'),
        'state_file': str(tmp_path / 'state' / 'session.json'),
        'lock_file': str(tmp_path / 'lanekeeper.lock'),
        'activity_log': str(tmp_path / 'activity.log'),
        'operation_log': str(tmp_path / 'operations.log'),
    }
    data.update(overrides)
    return Config(str(tmp_path / 'config.json'), data=data)


def write_leases(cfg, *lines):
    with open(cfg.lease_file, 'w') as f:
        f.write(''.join(line + '\n' for line in lines))


@pytest.fixture
def cfg(tmp_path):
    config = make_config(tmp_path)
    with open(config.registry_file, 'w') as f:
        f.write(REGISTRY_TEXT)
    write_leases(config)
    return config


@pytest.fixture
def kernel():
    k = MemoryKernel((LAN, WAN))
    k.ensure_firewall()
    return k


@pytest.fixture
def oplog():
    return OperationLog(name='lanekeeper.ops.test')


@pytest.fixture
def session(cfg):
    return Session(cfg.state_file)


@pytest.fixture
def shaped(kernel, cfg, oplog):
    '''Kernel with a healthy lane tree on both interfaces.'''
    TopologyManager(kernel, cfg, oplog).ensure_topology()
    return kernel


@pytest.fixture
def engine(shaped, cfg, session, oplog):
    return EnforcementEngine(shaped, cfg, session, oplog)


@pytest.fixture
def client():
    '''Control plane stand-in; tests set fetch_device_controls.'''
    c = MagicMock()
    c.notify_new_guest.return_value = {}
    return c


@pytest.fixture
def reconciler(cfg, kernel, client, session, oplog):
    return Reconciler(cfg, kernel, client=client, session=session,
                      oplog=oplog)
