"""Development server for Baker.

Serves the baked site with live reload and sane defaults for local authoring:
- Looks files up in the output directory first and then the input directory,
  so unresolved development references still load.
- Injects a reload script into HTML responses.
- Rejects directory listings and missing paths with a 404 (serving 404.html
  when present).
- Pushes reload messages to connected browsers over a websocket. A message
  naming a stylesheet swaps that stylesheet in place; anything else reloads
  the page.

Key classes:
- DevServer: HTTP plus websocket server.
- _ReloadHandler: HTTP request handler that injects the reload script.
"""

from __future__ import annotations

import functools
import json
import logging
import os
import threading
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any

import websockets

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3000


class _ReloadHandler(SimpleHTTPRequestHandler):
    """HTTP request handler that serves from several roots and injects live reload.

    Attributes:
        roots: Directories searched in order for each request.
        reload_script: Script appended to HTML responses.
    """

    reload_script_template = """
    <script>
    (() => {{
      const ws = new WebSocket('ws://' + location.hostname + ':{ws_port}');
      ws.onmessage = (event) => {{
        const data = JSON.parse(event.data || '{{}}');
        if (data.type !== 'reload') return;
        if (data.path && data.path.endsWith('.css')) {{
          let swapped = false;
          document.querySelectorAll('link[rel="stylesheet"]').forEach((link) => {{
            const url = new URL(link.href);
            if (url.pathname === data.path) {{
              url.searchParams.set('v', Date.now());
              link.href = url.toString();
              swapped = true;
            }}
          }});
          if (swapped) return;
        }}
        location.reload();
      }};
    }})();
    </script>
    """
    reload_script = reload_script_template.format(ws_port=DEFAULT_PORT + 1)
    roots: list[str] = []

    def end_headers(self):
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        super().end_headers()

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    def list_directory(self, path):  # pragma: no cover - exercised via send_head
        return self._serve_404()

    def translate_path(self, path):
        first = None
        for root in self.roots or [self.directory]:
            self.directory = root
            candidate = super().translate_path(path)
            first = first or candidate
            if os.path.isfile(candidate) or os.path.isfile(os.path.join(candidate, "index.html")):
                return candidate
        self.directory = (self.roots or [self.directory])[0]
        return first

    def _inject(self, content: str) -> bytes:
        if "</body>" in content:
            content = content.replace("</body>", f"{self.reload_script}</body>")
        else:
            content += self.reload_script
        return content.encode("utf-8")

    def _send_html(self, status: int, content: str) -> None:
        encoded = self._inject(content)
        self.send_response(status)
        self.send_header("Content-type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        self.wfile.write(encoded)

    def _serve_404(self):
        """Serve 404.html (when present) with injected reload script and a 404 status."""
        roots = self.roots or [self.directory]
        error_page = Path(roots[0]) / "404.html"
        if error_page.exists():
            self._send_html(404, error_page.read_text(encoding="utf-8"))
            return None
        self.send_error(404, "File not found")
        return None

    def send_head(self):
        path = self.translate_path(self.path)
        path_obj = Path(path)
        if path_obj.is_dir():
            index_path = path_obj / "index.html"
            if not index_path.exists():
                return self._serve_404()
            path_obj = index_path
        elif not path_obj.exists():
            return self._serve_404()

        if path_obj.suffix == ".html":
            self._send_html(200, path_obj.read_text(encoding="utf-8"))
            return None
        return super().send_head()


class DevServer:
    """Development server with live reload.

    The HTTP server runs on a daemon thread and only reads files. The
    websocket server runs on the caller's event loop, so reloads can be sent
    straight from the rebuild callbacks.

    Attributes:
        roots: Directories served, in lookup order.
        http_port: Port for HTTP.
        ws_port: Port for websocket connections.
    """

    def __init__(
        self,
        roots: list[Path],
        http_port: int = DEFAULT_PORT,
        ws_port: int | None = None,
    ):
        self.roots = [Path(root) for root in roots]
        self.http_port = http_port
        self.ws_port = ws_port if ws_port is not None else http_port + 1
        self._reload_script = _ReloadHandler.reload_script_template.format(ws_port=self.ws_port)
        self._ws_clients: set = set()
        self._httpd: ThreadingHTTPServer | None = None
        self._ws_server = None

    @property
    def url(self) -> str:
        return f"http://localhost:{self.http_port}"

    def handler_class(self) -> type[_ReloadHandler]:
        return type(
            "_ReloadHandlerWithRoots",
            (_ReloadHandler,),
            {
                "reload_script": self._reload_script,
                "roots": [str(root) for root in self.roots],
            },
        )

    def start_http(self) -> None:  # pragma: no cover - integration path
        handler = functools.partial(self.handler_class(), directory=str(self.roots[0]))
        self._httpd = ThreadingHTTPServer(("", self.http_port), handler)
        threading.Thread(target=self._httpd.serve_forever, daemon=True).start()

    async def start_ws(self) -> None:  # pragma: no cover - integration path
        self._ws_server = await websockets.serve(self._ws_handler, "0.0.0.0", self.ws_port)

    async def start(self) -> None:  # pragma: no cover - integration path
        self.start_http()
        await self.start_ws()

    async def stop(self) -> None:  # pragma: no cover - integration path
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()

    async def _ws_handler(self, websocket):
        self._ws_clients.add(websocket)
        try:
            await websocket.wait_closed()
        finally:
            self._ws_clients.discard(websocket)

    async def broadcast(self, payload: dict[str, Any]) -> None:
        """Send a message to every connected browser, dropping closed ones."""
        message = json.dumps(payload)
        stale = set()
        for ws in list(self._ws_clients):
            try:
                await ws.send(message)
            except websockets.ConnectionClosed:
                stale.add(ws)
        for ws in stale:
            self._ws_clients.discard(ws)

    async def reload(self, path: str | None = None) -> None:
        """Ask browsers to reload, or to swap just the stylesheet at ``path``."""
        payload: dict[str, Any] = {"type": "reload"}
        if path:
            payload["path"] = path
        logger.debug("reload %s", path or "page")
        await self.broadcast(payload)
