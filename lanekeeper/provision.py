'''One-shot registration of this router with the household control plane.'''
import logging

from scapy.all import get_if_hwaddr

from .config import write_config
from .leases import normalize_mac

logger = logging.getLogger(__name__)


def router_mac(iface):
    mac = normalize_mac(get_if_hwaddr(iface))
    if not mac:
        raise ValueError(f'No usable hardware address on {iface}')
    return mac


def provision(cfg, client, email, hwaddr=router_mac):
    '''
    Registers the router under email, identified by the hardware address of
    the LAN interface, and stores the household id the control plane hands
    back in the config file.
    '''
    mac = hwaddr(cfg.lan_interface)
    logger.info(f'📝 Registering router {mac} for {email}')
    household_id = client.register_router(email, mac)
    write_config(cfg.path, {'household_id': household_id})
    logger.info(f'✅ Router registered, household id {household_id}')
    return household_id
