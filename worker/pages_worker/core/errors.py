"""Classified crawler errors."""

from __future__ import annotations

from typing import Any, Dict, Optional

NAMESPACE_NOT_FOUND = "not-found"
NAMESPACE_CAPTCHA = "captcha"
NAMESPACE_MOBILE_RENDER = "mobile-render-mismatch"
NAMESPACE_FIELD_EXTRACTION = "field-extraction"
NAMESPACE_HANDLE_PAGE = "handle-page"
NAMESPACE_START_URLS = "start-urls"


class InfoError(Exception):
    """An in-page failure tagged with a namespace and the request it happened on.

    The namespace drives the escalation policy; everything else is diagnostic
    context that ends up in the warning logged for the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        namespace: str,
        url: Optional[str] = None,
        user_data: Optional[Dict[str, Any]] = None,
        **meta: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.namespace = namespace
        self.url = url
        self.user_data = user_data
        self.meta = meta

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "namespace": self.namespace,
            "url": self.url,
            "userData": self.user_data,
            **self.meta,
        }

    def __repr__(self) -> str:
        return f"InfoError({self.message!r}, namespace={self.namespace!r}, url={self.url!r})"
