"""Operator error types.

``ConfigurationError`` marks persisted state that is present but unusable.
The controllers log it and do not retry with backoff: nothing changes
until someone fixes the offending object, and the periodic resync picks
the object up again afterwards.
"""

from __future__ import annotations


class WorkloadIdentityError(Exception):
    """Base class for operator errors."""


class ConfigurationError(WorkloadIdentityError):
    """Raised when required configuration is missing or malformed."""


class MembershipConfigError(ConfigurationError):
    """Raised when the membership secret lacks a pool or identity provider."""


class KubeconfigError(WorkloadIdentityError):
    """Raised when a workload cluster kubeconfig secret cannot be parsed.

    Retried with backoff like any other reconcile failure, since the
    kubeconfig secret is rewritten by Cluster API on its own schedule.
    """
