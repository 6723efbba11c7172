"""Escalation policy deciding what a failed request does to its session and browser."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from pages_worker.core.errors import (
    NAMESPACE_CAPTCHA,
    NAMESPACE_FIELD_EXTRACTION,
    NAMESPACE_MOBILE_RENDER,
    NAMESPACE_NOT_FOUND,
    InfoError,
)
from pages_worker.models import CrawlRequest

logger = logging.getLogger(__name__)

# Failures that mean the current identity has been flagged by the site.
COMPROMISED_NAMESPACES = frozenset({NAMESPACE_CAPTCHA, NAMESPACE_MOBILE_RENDER, NAMESPACE_FIELD_EXTRACTION})


@dataclass(frozen=True)
class Escalation:
    retriable: bool = True
    mark_session_bad: bool = True
    retire_session: bool = False
    retire_worker: bool = False
    namespace: Optional[str] = None

    @property
    def classified(self) -> bool:
        return self.namespace is not None


def escalation_for(exc: BaseException) -> Escalation:
    """Map a raised error to the identity-health actions it calls for."""
    if not isinstance(exc, InfoError):
        return Escalation()

    namespace = exc.namespace
    if namespace == NAMESPACE_NOT_FOUND:
        return Escalation(retriable=False, mark_session_bad=False, namespace=namespace)
    if namespace in COMPROMISED_NAMESPACES:
        return Escalation(retire_session=True, retire_worker=True, namespace=namespace)
    return Escalation(namespace=namespace)


def apply_escalation(
    escalation: Escalation,
    request: CrawlRequest,
    error: BaseException,
    *,
    session=None,
    retire_worker: Optional[Callable[[], None]] = None,
) -> None:
    """Run the side effects of an escalation decision for one failed request."""
    if isinstance(error, InfoError):
        logger.warning("%s %s", error.message, error.to_dict())
    else:
        logger.debug("Request %s failed: %s", request.url, error)

    if not escalation.retriable:
        request.no_retry = True

    if session is not None:
        if escalation.mark_session_bad:
            session.mark_bad()
        if escalation.retire_session:
            session.retire()

    if escalation.retire_worker and retire_worker is not None:
        retire_worker()
