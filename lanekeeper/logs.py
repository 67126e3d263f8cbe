import logging
import logging.handlers
import os

OPS_LOGGER = 'lanekeeper.ops'

logger = logging.getLogger(__name__)


def _file_handler(path, max_bytes):
    try:
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            path, maxBytes=max_bytes, backupCount=1)
    except OSError as e:
        logger.warning(f'⚠️ Cannot open log file {path}: {e}')
        return None


def setup_logging(cfg=None, verbose=False):
    '''
    Console output plus the bounded activity log and the separate operation
    log. Safe to call more than once (handlers are replaced).
    '''
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler()]
    if cfg is not None:
        activity = _file_handler(cfg.activity_log, cfg.activity_log_bytes)
        if activity:
            activity.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)s] %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'))
            handlers.append(activity)
    handlers[0].setFormatter(logging.Formatter('[%(levelname)s] %(message)s'))
    logging.basicConfig(level=level, handlers=handlers, force=True)

    ops = logging.getLogger(OPS_LOGGER)
    ops.propagate = False
    ops.setLevel(logging.INFO)
    for h in list(ops.handlers):
        ops.removeHandler(h)
        h.close()
    if cfg is not None:
        handler = _file_handler(cfg.operation_log, 4 * cfg.activity_log_bytes)
        if handler:
            handler.setFormatter(logging.Formatter(
                '[%(asctime)s] [FILTER-OP] %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'))
            ops.addHandler(handler)


class OperationLog:
    '''
    Detailed record of every kernel rule add/remove, with rule counts before
    and after, sufficient to replay what a pass did. Entries are also kept in
    memory for the lifetime of the object so a pass can report on them.
    '''
    def __init__(self, name=OPS_LOGGER, keep=500):
        self.log = logging.getLogger(name)
        self.keep = keep
        self.entries = []

    def record(self, action, iface, ip, kind, lane, result, before, after,
               context=''):
        entry = {
            'action': action, 'iface': iface, 'ip': ip, 'type': kind,
            'lane': lane, 'result': result, 'before': before, 'after': after,
            'context': context,
        }
        self.entries.append(entry)
        if len(self.entries) > self.keep:
            del self.entries[:len(self.entries) - self.keep]
        self.log.info(f'ACTION={action} | IFACE={iface} | IP={ip} | '
                      f'TYPE={kind} | LANE={lane} | RESULT={result} | '
                      f'COUNT_BEFORE={before} | COUNT_AFTER={after} | '
                      f'CONTEXT={context}')
        return entry

    def snapshot(self, context, rules):
        '''Dumps a list of rules verbatim (e.g. before a destructive step).'''
        self.log.info(f'SNAPSHOT CONTEXT={context} COUNT={len(rules)}')
        for rule in rules:
            self.log.info(f'    {rule}')
        self.entries.append({'action': 'snapshot', 'context': context,
                             'rules': [str(r) for r in rules]})
