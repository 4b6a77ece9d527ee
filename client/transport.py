"""
RPC boundary between the client and the directory/relay server.

Operations are called by name with keyword payloads and return the decoded
JSON response. Server-side failures come back as ``RpcError`` carrying the
server's error code (``"GroupNotFound"``, ``"RecipientNoPrekey"``, ...).
"""

import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote
import httpx

logger = logging.getLogger(__name__)

# operation -> (HTTP method, path template)
ROUTES: Dict[str, Tuple[str, str]] = {
    'register': ('POST', '/register'),
    'publish_prekey': ('POST', '/upload_prekey'),
    'fetch_prekey': ('GET', '/prekey/{user}'),
    'send_private': ('POST', '/send_message'),
    'fetch_private': ('POST', '/fetch_messages'),
    'clear_private': ('POST', '/clear_chat'),
    'create_group': ('POST', '/create_group'),
    'force_add_member': ('POST', '/force_add_to_group'),
    'remove_member': ('POST', '/group_remove_member'),
    'send_group': ('POST', '/send_group_message'),
    'fetch_group': ('POST', '/fetch_group_messages'),
    'check_invites': ('POST', '/auto_join_groups'),
    'group_info': ('GET', '/group_info/{group_id}'),
    'list_user_groups': ('GET', '/user_groups/{user}'),
    'status': ('GET', '/status'),
}


class RpcError(Exception):
    """A remote operation failed"""

    def __init__(self, code: str, detail: str = "", status_code: Optional[int] = None):
        super().__init__(f"{code}: {detail}" if detail else code)
        self.code = code
        self.detail = detail
        self.status_code = status_code


class HttpTransport:
    """
    JSON-over-HTTP transport.

    Args:
        server_url: Base URL of the chat server
        http_client: Optional pre-built ``httpx.Client`` (e.g. a FastAPI
            TestClient); one is created when omitted
    """

    def __init__(self, server_url: str = "http://localhost:8000",
                 http_client: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.server_url = server_url.rstrip("/")
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.Client(timeout=timeout)

    def _url(self, template: str, params: Dict[str, Any]) -> str:
        path = template
        for name in list(params):
            placeholder = "{" + name + "}"
            if placeholder in path:
                path = path.replace(placeholder, quote(str(params.pop(name)), safe=""))
        return self.server_url + path

    def call(self, operation: str, **params: Any) -> Dict[str, Any]:
        """
        Invoke a named operation.

        Raises:
            RpcError: On any non-2xx response or transport failure
        """
        method, template = ROUTES[operation]
        url = self._url(template, params)
        try:
            if method == 'GET':
                response = self.http_client.get(url)
            else:
                response = self.http_client.post(url, json=params)
        except httpx.HTTPError as e:
            logger.warning("%s failed: %s", operation, e)
            raise RpcError("TransportError", str(e)) from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            code = body.get('error') or f"HTTP{response.status_code}"
            detail = body.get('detail') or response.text
            if not isinstance(detail, str):
                # FastAPI validation errors arrive as a list
                code, detail = "InvalidRequest", str(detail)
            raise RpcError(code, detail, response.status_code)

        return response.json()

    def close(self):
        if self._owns_client:
            self.http_client.close()
