"""
Form link helpers: turn whatever the user pasted into the form's view URL,
and derive the formResponse endpoint records are submitted to.
"""

import re
from typing import Optional

_EDIT_SUFFIX = re.compile(r"/edit/?(\?.*)?$", re.IGNORECASE)
_VIEWFORM_SUFFIX = re.compile(r"/viewform.*$", re.IGNORECASE)


def normalize_form_url(url: Optional[str]) -> Optional[str]:
    """Convert an edit URL to its viewform URL; leave viewform/prefilled URLs unchanged."""
    s = (url or "").strip()
    if not s:
        return None
    if _EDIT_SUFFIX.search(s):
        return _EDIT_SUFFIX.sub("/viewform", s)
    return s


def form_submit_url(view_url: Optional[str]) -> Optional[str]:
    """
    Derive the formResponse submit URL from a viewform (or edit) URL.

    Returns None when the link has no /viewform segment to replace.
    """
    normalized = normalize_form_url(view_url)
    if not normalized:
        return None
    submit = _VIEWFORM_SUFFIX.sub("/formResponse", normalized)
    if submit == normalized or "/formResponse" not in submit:
        return None
    return submit


def form_base_url(url: Optional[str]) -> Optional[str]:
    """Canonical form link: the normalized view URL with its query string removed."""
    normalized = normalize_form_url(url)
    if not normalized:
        return None
    return normalized.split("?", 1)[0]
