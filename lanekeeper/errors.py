'''Failure taxonomy shared by every lanekeeper component.'''


class LanekeeperError(Exception):
    pass


class ConfigurationMissing(LanekeeperError):
    '''A required local file or configuration key is absent.'''


class UpstreamUnavailable(LanekeeperError):
    '''The control plane could not produce a usable policy snapshot.'''


class EnforcementFailure(LanekeeperError):
    '''A kernel change was attempted but could not be verified.'''

    def __init__(self, ip, reason):
        super().__init__(f'{ip}: {reason}')
        self.ip = ip
        self.reason = reason


class LockContention(LanekeeperError):
    '''Another instance holds the reconciliation lock.'''


class NotificationDeliveryFailure(LanekeeperError):
    pass


class TopologyFailure(LanekeeperError):
    '''The lane hierarchy could not be verified or repaired.'''


class KernelError(LanekeeperError):
    '''Raised by kernel port implementations when an operation fails.'''

    def __init__(self, message, code=None):
        super().__init__(message)
        self.code = code
