import logging
import socket

from .leases import is_ipv4

logger = logging.getLogger(__name__)

CACHE_SECONDS = 3600


def resolve_hosts(hosts, resolver=socket.getaddrinfo):
    ips = set()
    for host in hosts:
        try:
            infos = resolver(host, None, socket.AF_INET, socket.SOCK_STREAM)
        except (socket.gaierror, OSError) as e:
            logger.warning(f'⚠️ Cannot resolve {host}: {e}')
            continue
        for info in infos:
            ip = info[4][0]
            if is_ipv4(ip): ips.add(ip)
    return ips


class CriticalServices:
    '''
    Addresses that always get the fast lane and are never swept: the static
    critical_ips plus whatever critical_hosts resolve to. Resolutions are
    cached in the session for an hour.
    '''
    def __init__(self, cfg, session, resolver=socket.getaddrinfo):
        self.static = [ip for ip in cfg.critical_ips if is_ipv4(ip)]
        self.hosts = cfg.critical_hosts
        self.fallback = [ip for ip in cfg.critical_fallback_ips if is_ipv4(ip)]
        self.session = session
        self.resolver = resolver

    def resolved(self, refresh=False):
        if not self.hosts: return set()
        cached = None if refresh else self.session.critical_ips(CACHE_SECONDS)
        if cached is not None: return set(cached)
        ips = resolve_hosts(self.hosts, self.resolver)
        if not ips:
            logger.warning(f'⚠️ Critical hosts resolved to nothing, using '
                           f'{len(self.fallback)} fallback address(es)')
            return set(self.fallback)
        logger.info(f'🔎 Resolved {len(self.hosts)} critical host(s) to '
                    f'{len(ips)} address(es)')
        self.session.set_critical_ips(ips)
        return ips

    def ips(self, refresh=False):
        return set(self.static) | self.resolved(refresh)
