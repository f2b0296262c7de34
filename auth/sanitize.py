"""
auth/sanitize.py -- Neutralize untrusted text before it is compared, stored or logged.

Pipeline (order matters for idempotency):
  1. html.unescape   -- entity-encoded markup ("&lt;script&gt;") is decoded
                        first so it cannot slip past the tag stripper.
  2. drop <script>...</script> blocks, then every remaining tag.
  3. drop the denylisted characters ' " ; \\
  4. html.escape     -- residual & < > become entities. Quotes are already gone.
  5. trim.

sanitize(sanitize(x)) == sanitize(x): step 1 exactly reverses step 4, and
steps 2-3 find nothing left to remove on a second pass.

Security note: steps 2-3 are legacy hardening carried over from the original
service, not the real mitigations. SQL injection is prevented by SQLAlchemy
bound parameters (auth/store.py) and XSS by encoding on output.

Passwords must NEVER go through sanitize() -- it would change the secret
before hashing and lock the user out.
"""

from __future__ import annotations

import html
import re

_SCRIPT_BLOCK_RE = re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]*>")
_DENYLIST_RE = re.compile(r"['\";\\]")


def sanitize(text: str) -> str:
    cleaned = html.unescape(text)
    cleaned = _SCRIPT_BLOCK_RE.sub("", cleaned)
    cleaned = _TAG_RE.sub("", cleaned)
    cleaned = _DENYLIST_RE.sub("", cleaned)
    return html.escape(cleaned, quote=False).strip()


def sanitize_email(email: str) -> str:
    """Sanitize and lower-case an address so lookups are case-insensitive."""
    return sanitize(email.strip()).lower()
