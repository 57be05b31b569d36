"""
errors.py - Failure taxonomy for the access controller.

Adapters raise these; the controller turns every one of them into a named
state plus a status message. None of them is fatal to the process.
"""


class GateError(Exception):
    """Base class for every access-controller failure."""


class UserRejected(GateError):
    """The user declined a wallet prompt (code 4001). Re-offer the action."""


class ProviderAbsent(GateError):
    """No compatible wallet is installed or injected."""


class WrongNetwork(GateError):
    """The wallet is on another chain and the switch was declined or failed."""


class ContractUnavailable(GateError):
    """The token contract could not be read (config, transport or ABI error)."""


class NetworkFailure(ContractUnavailable):
    """RPC transport failure while talking to the chain."""


class TransactionFailed(GateError):
    """The mint transaction was reverted, dropped or could not be sent."""


class NotConnected(GateError):
    """An operation needed a connected wallet account and there is none."""


class ProfileStoreUnavailable(GateError):
    """The profile store cannot be reached; callers degrade to ephemeral profiles."""


class AlreadyExists(GateError):
    """A profile already exists for this wallet address."""


class UsernameTaken(GateError):
    """Another profile already uses this username."""


class InvalidTransition(GateError):
    """The access state machine was asked for a transition it does not allow."""
