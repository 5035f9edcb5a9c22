import base64
import secrets

from .config import AUTH_REALM

STATIC_PREFIX = '/static/'


def expected_header(creds):
    return 'Basic ' + base64.b64encode(creds.encode('utf-8')).decode('ascii')


class AuthGate:
    """Static HTTP Basic credential check; ``/static/`` is never gated."""

    def __init__(self, creds):
        self.enabled = bool(creds)
        self._expected = expected_header(creds) if creds else ''

    def is_exempt(self, path):
        return path.startswith(STATIC_PREFIX)

    def allows(self, path, header):
        if not self.enabled or self.is_exempt(path):
            return True
        return secrets.compare_digest((header or '').encode('utf-8'), self._expected.encode('utf-8'))

    @property
    def challenge(self):
        return f'Basic realm="{AUTH_REALM}"'
