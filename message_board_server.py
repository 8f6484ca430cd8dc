#!/usr/bin/env python3
"""
Message Board Server - Single File Backend

A framework-free WSGI backend for a small community site: user registration and login, cookie sessions,
a public message board and a search-query logger, served next to the static assets of the frontend.

## Key Design Decisions
- **File-backed storage**: see `JsonFileStore`
  - Users live in memory and the whole collection is rewritten to USERS_FILE after every mutation
  - Messages are read from MESSAGES_FILE and rewritten in full on every send
  - Search queries are appended to SEARCH_LOG_FILE and never read back
  - A missing, blank or corrupted data file is an empty collection, the error is logged and the server carries on
- **Cookie sessions**: one random session id per user, a new login silently invalidates the previous one
- **Single file**: entire server implementation and its tests in one module
- **Structured logging**: JSON lines on the console, optionally to a rotating file (see `Deploy`)

## Concurrency
- waitress runs with THREADS=1 by default, every store mutation is still serialized by a lock on the store
- Saves are whole-file rewrites: two processes sharing the same data files will overwrite each other's changes

## Deploy
- Passwords are stored in plaintext, as the frontend expects: do not reuse real passwords on this server
- You should terminate TLS and rate limit through a reverse proxy
- You should set CLIENT_IP_HEADER when running behind a reverse proxy (e.g., "X-Forwarded-For" or "X-Real-IP")
- You should set LOG_LEVEL / LOG_FILE / LOG_MAX_SIZE / LOG_BACKUP_COUNT to enable rotating logs

## Tests
    python -m unittest message_board_server
"""

import io
import json
import logging
import logging.handlers
import os
import secrets
import sys
import tempfile
import threading
from datetime import datetime, timezone
from html import escape
from os import getenv
from pathlib import Path
from time import time_ns
from traceback import format_tb
from typing import Dict, List, Optional, Tuple
from unittest import TestCase
from unittest.mock import patch
from urllib.parse import parse_qs, unquote, urlencode

from waitress import serve

#### CONFIGURATION #####################################################################################################


# server
HOST = getenv("HOST", "localhost")
PORT = int(getenv("PORT") or 3000)
THREADS = int(getenv("THREADS") or 1)
# client ip detection
CLIENT_IP_HEADER = getenv("CLIENT_IP_HEADER")  # Optional header name for client IP detection
# data persistence
USERS_FILE = Path(getenv("USERS_FILE") or "users.json")
MESSAGES_FILE = Path(getenv("MESSAGES_FILE") or "messages.json")
SEARCH_LOG_FILE = Path(getenv("SEARCH_LOG_FILE") or "search.log")
# static assets
STATIC_ROOT = Path(getenv("STATIC_ROOT") or ".")
INDEX_FILE = getenv("INDEX_FILE", "index.html")
# sessions
SESSION_COOKIE_NAME = "sessionId"
SESSION_MAX_AGE = int(getenv("SESSION_MAX_AGE") or 86400)
SESSION_ID_BYTES = 16
# search
ANONYMOUS_USERNAME = getenv("ANONYMOUS_USERNAME", "anonymous")
# logging
LOG_LEVEL = getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = getenv("LOG_FILE")  # Optional file logging
LOG_MAX_SIZE = int(getenv("LOG_MAX_SIZE", 10 * 1024 * 1024))  # 10MB default
LOG_BACKUP_COUNT = int(getenv("LOG_BACKUP_COUNT", 5))


#### LOGGING ###########################################################################################################


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).strftime("%Y-%m-%dT%H:%M:%S.%f"),
            "logger": record.name,
            "level": record.levelname,
            "category": (lambda v: f"{record.name}.{v}" if v is not None else record.name)(
                getattr(record, "category", None)
            ),
            "message": record.getMessage(),
            "data": getattr(record, "data", {}),
        }
        return json.dumps(log_entry, default=str)


def setup_logging():
    """Set up logging configuration with console and optional file output"""
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    logger.handlers.clear()
    formatter = JSONFormatter()
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    if LOG_FILE:
        file_handler = logging.handlers.RotatingFileHandler(
            LOG_FILE, maxBytes=LOG_MAX_SIZE, backupCount=LOG_BACKUP_COUNT
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


main_logger = setup_logging()
# Category-specific loggers
auth_logger = logging.getLogger("auth")
http_logger = logging.getLogger("http")
storage_logger = logging.getLogger("storage")
search_logger = logging.getLogger("search")
security_logger = logging.getLogger("security")
config_logger = logging.getLogger("config")
lifecycle_logger = logging.getLogger("lifecycle")


def log_structured(logger, level, message, category=None, **extra_data_fields):
    """Helper function to log structured data as JSON"""
    logger.log(level, message, extra={"category": category or "general", "data": extra_data_fields})


#### HELPERS ###########################################################################################################


def format_datetime(dt: datetime) -> str:
    """Format datetime to ISO 8601"""
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def get_current_time() -> str:
    """Get current time in ISO format"""
    return format_datetime(datetime.now(timezone.utc))


def generate_session_id() -> str:
    """Random hex session id, not checked against live sessions"""
    return secrets.token_hex(SESSION_ID_BYTES)


def parse_cookies(cookie_header: str) -> Dict[str, str]:
    """Parse a Cookie header into name -> url-decoded value, pairs without `=` are skipped"""
    cookies = {}
    for pair in cookie_header.split(";"):
        name, separator, value = pair.partition("=")
        if not separator:
            continue
        cookies[name.strip()] = unquote(value.strip())
    return cookies


def parse_form(body: str) -> Dict[str, str]:
    """Parse an urlencoded body, the first value wins for repeated keys and blank values are kept"""
    return {key: values[0] for key, values in parse_qs(body, keep_blank_values=True).items()}


def escape_line_breaks(value: str) -> str:
    """Keep a free-text value on one line of a line-oriented log"""
    return value.replace("\r", "\\r").replace("\n", "\\n")


def session_cookie(session_id: str) -> str:
    return f"{SESSION_COOKIE_NAME}={session_id}; HttpOnly; Path=/; Max-Age={SESSION_MAX_AGE}; SameSite=Lax"


EXPIRED_SESSION_COOKIE = f"{SESSION_COOKIE_NAME}=; HttpOnly; Path=/; Expires=Thu, 01 Jan 1970 00:00:00 GMT"

STATUS_REASONS = {
    200: "OK",
    400: "Bad Request",
    401: "Unauthorized",
    404: "Not Found",
    500: "Internal Server Error",
}


def status_line(status_code: int) -> str:
    return f"{status_code} {STATUS_REASONS.get(status_code, 'Error')}"


#### ERRORS ############################################################################################################


class ClientInputError(Exception):
    """Rejected request, rendered as `{"success": false, "message": ...}` with status_code (400 or 401)"""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class PersistenceError(Exception):
    """A data file exists but can't be read or doesn't hold the expected JSON"""


class PersistenceWriteError(Exception):
    """A data file couldn't be written or appended to"""


#### STORAGE ###########################################################################################################


class JsonFileStore:
    """
    The users mapping held here is the source of truth between saves: every mutation is followed by a whole-file
    rewrite, and a failed rewrite is logged while the in-memory state carries on as if it succeeded
    Messages are not cached, each send reads the whole file, appends and rewrites it
    Mutations and their saves happen under `lock`, so worker threads never interleave two rewrites
    Rewrites go through a temporary file swapped in with os.replace, readers never see a half-written file
    """

    def __init__(self, users_path: Path, messages_path: Path, search_log_path: Path):
        self.users_path = Path(users_path)
        self.messages_path = Path(messages_path)
        self.search_log_path = Path(search_log_path)
        self.users: Dict[str, Dict] = {}
        self.session_index: Dict[str, str] = {}  # sessionId -> username, mirrors the sessionId stored in self.users
        self.lock = threading.RLock()

    # files

    def ensure_data_files(self):
        """Create the users and messages files with an empty collection if they don't exist yet"""
        for path, empty_content in ((self.users_path, "{}"), (self.messages_path, "[]")):
            if path.exists():
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(empty_content, encoding="utf-8")
            log_structured(storage_logger, logging.INFO, "Data file created", path=str(path), operation="create")

    def _read_json(self, path: Path, expected_type: type):
        """Returns None for a missing or blank file, raises PersistenceError when the content can't be used"""
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise PersistenceError(f"cannot read {path}: {e}") from e
        if not raw.strip():
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"cannot parse {path}: {e}") from e
        if type(data) is not expected_type:
            raise PersistenceError(f"{path} holds a {type(data).__name__}, expected a {expected_type.__name__}")
        return data

    def _write_json(self, path: Path, data):
        """Write next to path then swap the file in, so path always holds complete JSON"""
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
            ) as f:
                tmp_path = Path(f.name)
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise PersistenceWriteError(f"cannot write {path}: {e}") from e

    # users

    def load_users(self) -> Dict[str, Dict]:
        """Replace the in-memory users with the content of the users file and rebuild the session index"""
        with self.lock:
            try:
                users = self._read_json(self.users_path, dict) or {}
            except PersistenceError as e:
                log_structured(
                    storage_logger,
                    logging.ERROR,
                    "Error loading users - starting with no users",
                    path=str(self.users_path),
                    error=str(e),
                    operation="load_users_error",
                )
                users = {}
            invalid_usernames = [username for username, user in users.items() if type(user) is not dict]
            for username in invalid_usernames:
                del users[username]
            if invalid_usernames:
                log_structured(
                    storage_logger,
                    logging.WARNING,
                    "Skipped invalid user records",
                    path=str(self.users_path),
                    usernames=invalid_usernames,
                )
            # a session id that isn't a string can't resolve, the user is simply logged out
            for username, user in users.items():
                if "sessionId" in user and type(user["sessionId"]) is not str:
                    del user["sessionId"]
                    log_structured(
                        storage_logger,
                        logging.WARNING,
                        "Dropped invalid session id",
                        path=str(self.users_path),
                        username=username,
                    )
            self.users = users

            self.session_index = {
                user["sessionId"]: username for username, user in users.items() if user.get("sessionId")
            }
            log_structured(
                storage_logger,
                logging.INFO,
                "Users loaded",
                path=str(self.users_path),
                user_count=len(self.users),
                active_sessions=len(self.session_index),
                operation="load_users",
            )
            return self.users

    def save_users(self) -> bool:
        """Rewrite the users file from memory, returns False (after logging) if the write failed"""
        with self.lock:
            try:
                self._write_json(self.users_path, self.users)
            except PersistenceWriteError as e:
                log_structured(
                    storage_logger,
                    logging.ERROR,
                    "Error saving users",
                    path=str(self.users_path),
                    error=str(e),
                    operation="save_users_error",
                )
                return False
            log_structured(
                storage_logger, logging.DEBUG, "Users saved", user_count=len(self.users), operation="save_users"
            )
            return True

    def create_user(self, username: str, password: str) -> bool:
        """Returns False when the username is already taken"""
        with self.lock:
            if username in self.users:
                return False
            self.users[username] = {"password": password}
            self.save_users()
            return True

    def check_credentials(self, username: Optional[str], password: Optional[str]) -> bool:
        user = self.users.get(username) if username else None
        return user is not None and password is not None and user.get("password") == password

    # sessions

    def start_session(self, username: str) -> str:
        """Bind a fresh session id to the user, the previous one stops resolving"""
        with self.lock:
            user = self.users[username]
            previous_session_id = user.get("sessionId")
            if previous_session_id:
                self.session_index.pop(previous_session_id, None)
            session_id = generate_session_id()
            user["sessionId"] = session_id
            self.session_index[session_id] = username
            self.save_users()
            return session_id

    def end_session(self, username: str) -> bool:
        with self.lock:
            user = self.users.get(username)
            if user is None or "sessionId" not in user:
                return False
            self.session_index.pop(user.pop("sessionId"), None)
            self.save_users()
            return True

    def username_for_session(self, session_id: Optional[str]) -> Optional[str]:
        if not session_id:
            return None
        return self.session_index.get(session_id)

    # messages

    def load_messages(self) -> List[Dict]:
        try:
            return self._read_json(self.messages_path, list) or []
        except PersistenceError as e:
            log_structured(
                storage_logger,
                logging.ERROR,
                "Error loading messages - using an empty board",
                path=str(self.messages_path),
                error=str(e),
                operation="load_messages_error",
            )
            return []

    def save_messages(self, messages: List[Dict]) -> bool:
        with self.lock:
            try:
                self._write_json(self.messages_path, messages)
            except PersistenceWriteError as e:
                log_structured(
                    storage_logger,
                    logging.ERROR,
                    "Error saving messages",
                    path=str(self.messages_path),
                    error=str(e),
                    operation="save_messages_error",
                )
                return False
            log_structured(
                storage_logger,
                logging.DEBUG,
                "Messages saved",
                message_count=len(messages),
                operation="save_messages",
            )
            return True

    def append_message(self, username: str, content: str) -> Dict:
        with self.lock:
            messages = self.load_messages()
            message = {"username": username, "content": content, "timestamp": get_current_time()}
            messages.append(message)
            self.save_messages(messages)
            return message

    # search log

    def append_search_log(self, username: str, query: str) -> str:
        """Append one line to the search log and return it, raises PersistenceWriteError"""
        entry = f'{get_current_time()}: [{escape_line_breaks(username)}] "{escape_line_breaks(query)}"'
        try:
            with self.search_log_path.open("a", encoding="utf-8") as f:
                f.write(entry + "\n")
        except OSError as e:
            raise PersistenceWriteError(f"cannot append to {self.search_log_path}: {e}") from e
        return entry


#### STATIC FILES ######################################################################################################


CONTENT_TYPES = {
    ".html": "text/html",
    ".js": "text/javascript",
    ".css": "text/css",
    ".json": "application/json",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
}


class StaticFileServer:
    """Serves the files below root, falling back to a directory's index file"""

    def __init__(self, root: Path, index_file: str = INDEX_FILE, hidden_paths=()):
        self.root = Path(root).resolve()
        self.index_file = index_file
        # data files may live below root, they are never served
        self.hidden_paths = {Path(p).resolve() for p in hidden_paths}

    def resolve(self, request_path: str) -> Optional[Path]:
        """Filesystem path for a url path, None if it points outside root or can't be resolved"""
        try:
            candidate = (self.root / request_path.lstrip("/")).resolve()
        except (OSError, ValueError):  # e.g. a NUL byte in the path
            return None
        if candidate != self.root and self.root not in candidate.parents:
            return None
        return candidate

    def serve(self, request_path: str) -> Tuple[int, str, bytes]:
        """Returns (status_code, content_type, body)"""
        path = self.resolve(request_path)
        if path is None or path in self.hidden_paths or not path.exists():
            log_structured(
                http_logger,
                logging.INFO,
                "Static file not found",
                request_path=request_path,
                resolved_path=str(path) if path else None,
            )
            return 404, "text/html", self._not_found_page(request_path, path)
        content_type = CONTENT_TYPES.get(path.suffix.lower(), "text/plain")
        if path.is_dir():
            index_path = path / self.index_file
            if not index_path.is_file():
                body = f"<h1>404 Not Found</h1><p>No default file in directory: {escape(request_path)}</p>"
                return 404, "text/html", body.encode("utf-8")
            path, content_type = index_path, "text/html"
        try:
            content = path.read_bytes()
        except OSError as e:
            log_structured(http_logger, logging.ERROR, "Error reading static file", path=str(path), error=str(e))
            body = f"<h1>Server Error</h1><p>Error reading file: {escape(str(e))}</p>"
            return 500, "text/html", body.encode("utf-8")
        return 200, content_type, content

    def _not_found_page(self, request_path: str, path: Optional[Path]) -> bytes:
        resolved = escape(str(path)) if path is not None else "(not a path inside the served directory)"
        return f"""
<html>
    <head><title>404 Not Found</title></head>
    <body>
        <h1>404 Not Found</h1>
        <p>The requested file {escape(request_path)} was not found</p>
        <p>Looked for it at {resolved}</p>
        <p>Served directory: {escape(str(self.root))}</p>
        <a href="/">Back to home page</a>
    </body>
</html>
""".encode("utf-8")


#### IMPLEMENTATION ####################################################################################################


class RequestHandler:
    """Handles a single request: resolves the caller's session, routes, renders the response"""

    def __init__(self, app: "MessageBoardApp", environ, start_response):
        self.app = app
        self.store: JsonFileStore = app.store
        self.environ = environ
        self.start_response = start_response
        self._request_start_time = time_ns()
        self._request_method = environ.get("REQUEST_METHOD", "GET").upper()
        self._request_path = environ.get("PATH_INFO") or "/"
        self.current_username: Optional[str] = None

    def handle(self):
        try:
            self.current_username = self._resolve_session()
            return self._handle_request(self._request_method, self._request_path)
        except Exception as exc:
            log_structured(
                http_logger,
                logging.ERROR,
                "Internal Server Error",
                method=self._request_method,
                path=self._request_path,
                exception_type=str(exc),
                exception_traceback=format_tb(exc.__traceback__),
            )
            return self._send_error(500, "Internal Server Error")

    @staticmethod
    def _require_auth(message):
        """Only executes the wrapped handler if current_username is set, else raises a 401 with `message`"""

        def decorator(func):
            def wrapper(self, *args, **kwargs):
                if self.current_username is None:
                    log_structured(
                        security_logger,
                        logging.WARNING,
                        "Authentication required but not provided",
                        ip=self._get_client_ip(),
                        path=self._request_path,
                    )
                    raise ClientInputError(401, message)
                return func(self, *args, **kwargs)

            return wrapper

        return decorator

    def _get_client_ip(self):
        """Get client IP address from header (if configured) or environ"""
        if CLIENT_IP_HEADER:
            header_key = f"HTTP_{CLIENT_IP_HEADER.upper().replace('-', '_')}"
            header_value = self.environ.get(header_key)
            if header_value:
                return header_value.split(",")[0].strip()
        return self.environ.get("REMOTE_ADDR", "127.0.0.1")

    def _resolve_session(self) -> Optional[str]:
        cookies = parse_cookies(self.environ.get("HTTP_COOKIE", ""))
        session_id = cookies.get(SESSION_COOKIE_NAME)
        if not session_id:
            return None
        username = self.store.username_for_session(session_id)
        if username is None:
            log_structured(
                security_logger,
                logging.INFO,
                "Unknown or expired session id",
                ip=self._get_client_ip(),
                session_id_prefix=session_id[:8],
            )
        return username

    def _handle_request(self, method: str, path: str):
        """Route request to the matching handler, anything else goes to the static files"""
        log_structured(
            http_logger,
            logging.INFO,
            "Request received",
            method=method,
            path=path,
            ip=self._get_client_ip(),
            username=self.current_username,
        )
        handler_name = self.app.route_table.get((method, path))
        if handler_name is None:
            status_code, content_type, body = self.app.static_files.serve(path)
            return self._send_bytes(status_code, [("Content-Type", content_type)], body)
        try:
            return getattr(self, handler_name)()
        except ClientInputError as exc:
            return self._send_error(exc.status_code, exc.message)

    def _get_request_body(self) -> Dict[str, str]:
        """Parse the urlencoded request body"""
        try:
            content_length = int(self.environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            content_length = 0
        if content_length <= 0:
            log_structured(http_logger, logging.DEBUG, "Request body: empty", payload_size=0, has_body=False)
            return {}
        body = self.environ["wsgi.input"].read(content_length).decode("utf-8", errors="replace")
        log_structured(
            http_logger,
            logging.DEBUG,
            "Request body received",
            payload_size=content_length,
            ip=self._get_client_ip(),
            has_body=True,
        )
        return parse_form(body)

    def _send_bytes(self, status_code: int, headers: List[Tuple[str, str]], body: bytes):
        duration_ms = (time_ns() - self._request_start_time) / 1_000_000
        log_structured(
            http_logger,
            logging.INFO,
            "Request completed",
            method=self._request_method,
            path=self._request_path,
            status_code=status_code,
            duration_ms=duration_ms,
            response_size=len(body),
            ip=self._get_client_ip(),
        )
        self.start_response(status_line(status_code), [*headers, ("Content-Length", str(len(body)))])
        return [body]

    def _send_response(self, status_code: int, data: Dict, headers: Optional[List[Tuple[str, str]]] = None):
        """Send JSON response"""
        body = json.dumps(data, indent=2).encode("utf-8")
        return self._send_bytes(status_code, [("Content-Type", "application/json"), *(headers or [])], body)

    def _send_error(self, status_code: int, message: str):
        return self._send_response(status_code, {"success": False, "message": message})

    # Account endpoints

    def _handle_register(self):
        """POST /register"""
        data = self._get_request_body()
        username, password = data.get("username"), data.get("password")
        client_ip = self._get_client_ip()
        if not username or not password:
            log_structured(
                auth_logger, logging.WARNING, "Registration failed: missing fields", ip=client_ip, username=username
            )
            raise ClientInputError(400, "Username and password are required")
        if not self.store.create_user(username, password):
            log_structured(
                auth_logger,
                logging.WARNING,
                "Registration failed: username already exists",
                ip=client_ip,
                username=username,
            )
            raise ClientInputError(400, "Username already exists")
        log_structured(auth_logger, logging.INFO, "User registered successfully", ip=client_ip, username=username)
        return self._send_response(200, {"success": True, "message": "Registration successful", "username": username})

    def _handle_login(self):
        """POST /login"""
        data = self._get_request_body()
        username, password = data.get("username"), data.get("password")
        client_ip = self._get_client_ip()
        if not self.store.check_credentials(username, password):
            log_structured(
                auth_logger, logging.WARNING, "Login failed: invalid credentials", ip=client_ip, username=username
            )
            raise ClientInputError(401, "Invalid username or password")
        session_id = self.store.start_session(username)
        log_structured(auth_logger, logging.INFO, "User logged in successfully", ip=client_ip, username=username)
        return self._send_response(
            200,
            {"success": True, "message": "Login successful", "username": username, "sessionId": session_id},
            headers=[("Set-Cookie", session_cookie(session_id))],
        )

    @_require_auth("Not logged in")
    def _handle_logout(self):
        """POST /logout"""
        self.store.end_session(self.current_username)
        log_structured(
            auth_logger, logging.INFO, "User logged out", ip=self._get_client_ip(), username=self.current_username
        )
        return self._send_response(
            200, {"success": True, "message": "Logout successful"}, headers=[("Set-Cookie", EXPIRED_SESSION_COOKIE)]
        )

    def _handle_check_auth(self):
        """GET /api/check-auth"""
        if self.current_username is None:
            return self._send_response(200, {"authenticated": False})
        return self._send_response(200, {"authenticated": True, "username": self.current_username})

    # Search endpoint

    def _handle_search(self):
        """POST /search - the username is free text, nothing ties it to the session"""
        data = self._get_request_body()
        query = data.get("query")
        username = data.get("username") or ANONYMOUS_USERNAME
        if not query:
            raise ClientInputError(400, "Search query cannot be empty")
        try:
            entry = self.store.append_search_log(username, query)
        except PersistenceWriteError as exc:
            log_structured(
                search_logger,
                logging.ERROR,
                "Error writing search log",
                path=str(self.store.search_log_path),
                error=str(exc),
            )
            return self._send_error(500, "Server error")
        log_structured(search_logger, logging.INFO, entry, username=username, ip=self._get_client_ip())
        return self._send_response(200, {"success": True, "message": "Search recorded"})

    # Message board endpoints

    @_require_auth("Please log in before sending messages")
    def _handle_send_message(self):
        """POST /send-message"""
        content = self._get_request_body().get("content")
        if not content:
            raise ClientInputError(400, "Message content cannot be empty")
        message = self.store.append_message(self.current_username, content)
        log_structured(
            http_logger,
            logging.INFO,
            "Message sent",
            "CRUD",
            operation="send_message",
            username=self.current_username,
            timestamp=message["timestamp"],
            content_length=len(content),
        )
        return self._send_response(200, {"success": True, "message": "Message sent"})

    def _handle_get_messages(self):
        """GET /get-messages"""
        return self._send_response(200, {"success": True, "messages": self.store.load_messages()})


ROUTES = (
    ("POST", "/register", "_handle_register"),
    ("POST", "/login", "_handle_login"),
    ("POST", "/logout", "_handle_logout"),
    ("POST", "/search", "_handle_search"),
    ("POST", "/send-message", "_handle_send_message"),
    ("GET", "/get-messages", "_handle_get_messages"),
    ("GET", "/api/check-auth", "_handle_check_auth"),
)


def build_route_table(routes, handler_class=RequestHandler) -> Dict[Tuple[str, str], str]:
    """(method, path) -> handler method name, refuses duplicate routes and handlers missing from handler_class"""
    table = {}
    for method, path, handler_name in routes:
        key = (method.upper(), path)
        if key in table:
            raise ValueError(f"duplicate route: {method} {path}")
        if not callable(getattr(handler_class, handler_name, None)):
            raise ValueError(f"unknown handler for {method} {path}: {handler_name}")
        table[key] = handler_name
    return table


class MessageBoardApp:
    """WSGI application, a fresh RequestHandler takes each request"""

    def __init__(self, store: JsonFileStore, static_files: StaticFileServer, routes=ROUTES):
        self.store = store
        self.static_files = static_files
        self.route_table = build_route_table(routes)

    def __call__(self, environ, start_response):
        return RequestHandler(self, environ, start_response).handle()


def run_server(host: str = HOST, port: int = PORT):
    """Run the message board server until interrupted, the users are saved once more on the way out"""
    store = JsonFileStore(USERS_FILE, MESSAGES_FILE, SEARCH_LOG_FILE)
    store.ensure_data_files()
    store.load_users()
    log_structured(lifecycle_logger, logging.INFO, "Message board server starting", host=host, port=port)
    log_structured(
        config_logger,
        logging.INFO,
        "Data persistence",
        users_file=str(USERS_FILE),
        messages_file=str(MESSAGES_FILE),
        search_log_file=str(SEARCH_LOG_FILE),
    )
    log_structured(
        config_logger,
        logging.INFO,
        "Static assets",
        static_root=str(STATIC_ROOT.resolve()),
        index_file=INDEX_FILE,
    )
    log_structured(
        config_logger,
        logging.INFO,
        "Sessions",
        session_max_age=SESSION_MAX_AGE,
        threads=THREADS,
        client_ip_header=CLIENT_IP_HEADER,
    )
    log_structured(
        config_logger,
        logging.INFO,
        "Logging config",
        log_level=LOG_LEVEL,
        log_file=bool(LOG_FILE),
        log_file_path=LOG_FILE,
    )
    static_files = StaticFileServer(STATIC_ROOT, INDEX_FILE, hidden_paths=(USERS_FILE, MESSAGES_FILE, SEARCH_LOG_FILE))
    app = MessageBoardApp(store, static_files)

    # Document routes - using print here
    print(f"Message board server running on http://{host}:{port}/")
    print("API endpoints available:")
    print("  POST   /register  --------------- Register")
    print("  POST   /login  ------------------ Login")
    print("  POST   /logout  ----------------- Logout")
    print("  POST   /search  ----------------- Record a search query")
    print("  POST   /send-message  ----------- Post on the message board")
    print("  GET    /get-messages  ----------- Read the message board")
    print("  GET    /api/check-auth  --------- Current session")
    print("  *      anything else  ----------- Static files")
    print("\nPress Ctrl+C to stop the server")
    # waitress stops on Ctrl+C and returns from serve
    try:
        serve(app, host=host, port=port, threads=THREADS)
    finally:
        log_structured(lifecycle_logger, logging.INFO, "shutting down server")
        did_save = store.save_users()
        log_structured(lifecycle_logger, logging.INFO, "saved users" if did_save else "couldn't save users")
        log_structured(lifecycle_logger, logging.INFO, "process terminating now")


if __name__ == "__main__":
    port = int(sys.argv[1]) if len(sys.argv) > 1 else PORT
    run_server(HOST, port)


#### TESTS #############################################################################################################


def _call_app(app, method, path, form=None, cookie=None):
    """Drive the WSGI app like a server would, returns (status_code, headers, body)"""
    body = urlencode(form).encode("utf-8") if form is not None else b""
    environ = {
        "REQUEST_METHOD": method,
        "PATH_INFO": path,
        "CONTENT_LENGTH": str(len(body)),
        "wsgi.input": io.BytesIO(body),
        "REMOTE_ADDR": "127.0.0.1",
    }
    if cookie is not None:
        environ["HTTP_COOKIE"] = cookie
    captured = {}

    def start_response(status, headers):
        captured["status"], captured["headers"] = status, headers

    chunks = app(environ, start_response)
    return int(captured["status"].split(" ")[0]), dict(captured["headers"]), b"".join(chunks)


def _logged_levels(log_structured_mock):
    return [call.args[1] for call in log_structured_mock.call_args_list]


class TestHelpers(TestCase):
    def test_parse_cookies_trims_and_decodes(self):
        cookies = parse_cookies(" theme=dark ;sessionId=abc%20def; lang = fr")
        self.assertEqual(cookies, {"theme": "dark", "sessionId": "abc def", "lang": "fr"})

    def test_parse_cookies_skips_pairs_without_separator(self):
        self.assertEqual(parse_cookies("flag; sessionId=abc"), {"sessionId": "abc"})

    def test_parse_cookies_keeps_equal_signs_in_value(self):
        self.assertEqual(parse_cookies("token=a=b"), {"token": "a=b"})

    def test_parse_cookies_empty_header(self):
        self.assertEqual(parse_cookies(""), {})

    def test_parse_form_first_value_wins_and_blank_values_are_kept(self):
        form = parse_form("username=alice&username=bob&password=&query=hello+world%21")
        self.assertEqual(form, {"username": "alice", "password": "", "query": "hello world!"})

    def test_generate_session_id_is_random_hex(self):
        session_id = generate_session_id()
        self.assertEqual(len(session_id), SESSION_ID_BYTES * 2)
        int(session_id, 16)
        self.assertNotEqual(session_id, generate_session_id())

    def test_session_cookie(self):
        self.assertEqual(
            session_cookie("abc"), f"sessionId=abc; HttpOnly; Path=/; Max-Age={SESSION_MAX_AGE}; SameSite=Lax"
        )

    def test_get_current_time_is_iso_8601(self):
        value = get_current_time()
        self.assertTrue(value.endswith("Z"))
        parsed = datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ")
        self.assertEqual(parsed.year, datetime.now(timezone.utc).year)

    def test_status_line(self):
        self.assertEqual(status_line(401), "401 Unauthorized")
        self.assertEqual(status_line(418), "418 Error")


class TestJsonFileStore(TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp_dir.cleanup)
        self.root = Path(self.tmp_dir.name)
        self.store = self._new_store()
        log_patcher = patch("message_board_server.log_structured")
        self.log_structured_mock = log_patcher.start()
        self.addCleanup(log_patcher.stop)

    def _new_store(self):
        return JsonFileStore(self.root / "users.json", self.root / "messages.json", self.root / "search.log")

    # load

    def test_load_users_missing_file(self):
        self.assertEqual(self.store.load_users(), {})

    def test_load_users_blank_file(self):
        self.store.users_path.write_text("  \n", encoding="utf-8")
        self.assertEqual(self.store.load_users(), {})
        self.assertNotIn(logging.ERROR, _logged_levels(self.log_structured_mock))

    def test_load_users_corrupted_file_is_logged_not_raised(self):
        self.store.users_path.write_text('{"alice": {"password": ', encoding="utf-8")
        self.assertEqual(self.store.load_users(), {})
        self.assertIn(logging.ERROR, _logged_levels(self.log_structured_mock))

    def test_load_users_wrong_top_level_type(self):
        self.store.users_path.write_text("[]", encoding="utf-8")
        self.assertEqual(self.store.load_users(), {})
        self.assertIn(logging.ERROR, _logged_levels(self.log_structured_mock))

    def test_load_users_skips_invalid_records(self):
        self.store.users_path.write_text('{"alice": {"password": "pw1"}, "bob": "oops"}', encoding="utf-8")
        self.assertEqual(self.store.load_users(), {"alice": {"password": "pw1"}})

    def test_load_users_drops_session_ids_that_are_not_strings(self):
        content = {"alice": {"password": "pw1", "sessionId": ["x"]}, "bob": {"password": "pw2", "sessionId": {}}}
        self.store.users_path.write_text(json.dumps(content), encoding="utf-8")
        self.assertEqual(self.store.load_users(), {"alice": {"password": "pw1"}, "bob": {"password": "pw2"}})
        self.assertEqual(self.store.session_index, {})
        self.assertIn(logging.WARNING, _logged_levels(self.log_structured_mock))

    def test_load_users_rebuilds_session_index(self):
        content = {"alice": {"password": "pw1", "sessionId": "s1"}, "bob": {"password": "pw2"}}
        self.store.users_path.write_text(json.dumps(content), encoding="utf-8")
        self.store.load_users()
        self.assertEqual(self.store.session_index, {"s1": "alice"})
        self.assertEqual(self.store.username_for_session("s1"), "alice")
        self.assertIsNone(self.store.username_for_session("s2"))
        self.assertIsNone(self.store.username_for_session(""))

    def test_load_messages_missing_blank_and_corrupted(self):
        self.assertEqual(self.store.load_messages(), [])
        self.store.messages_path.write_text("", encoding="utf-8")
        self.assertEqual(self.store.load_messages(), [])
        self.store.messages_path.write_text("[{", encoding="utf-8")
        self.assertEqual(self.store.load_messages(), [])
        self.store.messages_path.write_text("{}", encoding="utf-8")
        self.assertEqual(self.store.load_messages(), [])

    def test_ensure_data_files(self):
        self.store.ensure_data_files()
        self.assertEqual(self.store.users_path.read_text(encoding="utf-8"), "{}")
        self.assertEqual(self.store.messages_path.read_text(encoding="utf-8"), "[]")

    def test_ensure_data_files_keeps_existing_content(self):
        self.store.users_path.write_text('{"alice": {"password": "pw1"}}', encoding="utf-8")
        self.store.ensure_data_files()
        self.assertEqual(self.store.users_path.read_text(encoding="utf-8"), '{"alice": {"password": "pw1"}}')

    # save and reload

    def test_users_survive_a_save_and_reload(self):
        self.store.create_user("alice", "pw1")
        self.store.create_user("zoé", "mot de passe")
        session_id = self.store.start_session("alice")
        expected = json.loads(json.dumps(self.store.users))
        reloaded = self._new_store()
        self.assertEqual(reloaded.load_users(), expected)
        self.assertEqual(reloaded.username_for_session(session_id), "alice")

    def test_users_file_is_pretty_printed_json(self):
        self.store.create_user("zoé", "pw")
        self.assertEqual(
            self.store.users_path.read_text(encoding="utf-8"), '{\n  "zoé": {\n    "password": "pw"\n  }\n}'
        )

    def test_messages_survive_a_save_and_reload(self):
        messages = [
            {"username": "alice", "content": "hello", "timestamp": "2024-01-01T00:00:00.000Z"},
            {"username": "bob", "content": "hi alice", "timestamp": "2024-01-01T00:00:01.000Z"},
        ]
        self.assertTrue(self.store.save_messages(messages))
        self.assertEqual(self._new_store().load_messages(), messages)

    def test_save_failure_is_logged_and_memory_carries_on(self):
        self.store.users_path.mkdir()  # writing to a directory fails
        self.assertTrue(self.store.create_user("alice", "pw1"))
        self.assertEqual(self.store.users, {"alice": {"password": "pw1"}})
        self.assertFalse(self.store.save_users())
        self.assertIn(logging.ERROR, _logged_levels(self.log_structured_mock))

    # users and sessions

    def test_create_user_refuses_duplicates_and_keeps_password(self):
        self.assertTrue(self.store.create_user("alice", "pw1"))
        self.assertFalse(self.store.create_user("alice", "pw2"))
        self.assertEqual(self.store.users["alice"]["password"], "pw1")

    def test_check_credentials(self):
        self.store.create_user("alice", "pw1")
        self.assertTrue(self.store.check_credentials("alice", "pw1"))
        self.assertFalse(self.store.check_credentials("alice", "PW1"))
        self.assertFalse(self.store.check_credentials("alice", None))
        self.assertFalse(self.store.check_credentials("bob", "pw1"))
        self.assertFalse(self.store.check_credentials(None, None))

    def test_new_session_invalidates_the_previous_one(self):
        self.store.create_user("alice", "pw1")
        first = self.store.start_session("alice")
        second = self.store.start_session("alice")
        self.assertNotEqual(first, second)
        self.assertIsNone(self.store.username_for_session(first))
        self.assertEqual(self.store.username_for_session(second), "alice")
        self.assertEqual(self.store.users["alice"]["sessionId"], second)
        self.assertEqual(self.store.session_index, {second: "alice"})

    def test_end_session(self):
        self.store.create_user("alice", "pw1")
        session_id = self.store.start_session("alice")
        self.assertTrue(self.store.end_session("alice"))
        self.assertNotIn("sessionId", self.store.users["alice"])
        self.assertIsNone(self.store.username_for_session(session_id))
        self.assertFalse(self.store.end_session("alice"))
        self.assertFalse(self.store.end_session("nobody"))

    # messages and search log

    def test_append_message_keeps_insertion_order(self):
        first = self.store.append_message("alice", "one")
        second = self.store.append_message("bob", "two")
        messages = self.store.load_messages()
        self.assertEqual(messages, [first, second])
        self.assertEqual([m["content"] for m in messages], ["one", "two"])
        self.assertLessEqual(first["timestamp"], second["timestamp"])

    def test_append_search_log(self):
        first = self.store.append_search_log("alice", "cats")
        self.store.append_search_log(ANONYMOUS_USERNAME, "dogs")
        lines = self.store.search_log_path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(lines[0], first)
        self.assertTrue(lines[0].endswith(': [alice] "cats"'))
        self.assertTrue(lines[1].endswith(f': [{ANONYMOUS_USERNAME}] "dogs"'))

    def test_append_search_log_failure_raises(self):
        store = JsonFileStore(self.root / "users.json", self.root / "messages.json", self.root)
        with self.assertRaises(PersistenceWriteError):
            store.append_search_log("alice", "cats")

    def test_append_search_log_keeps_one_line_per_entry(self):
        entry = self.store.append_search_log("mal\nlory", "cats\r\n2024-01-01T00:00:00.000Z: [admin] \"dogs\"")
        lines = self.store.search_log_path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(lines, [entry])
        self.assertTrue(entry.endswith(': [mal\\nlory] "cats\\r\\n2024-01-01T00:00:00.000Z: [admin] "dogs""'))

    # atomic rewrites

    def test_failed_rewrite_keeps_previous_messages_on_disk(self):
        first = self.store.append_message("alice", "one")
        second = self.store.append_message("bob", "two")

        def dump_until_disk_full(data, f, **kwargs):
            f.write("[\n  {")
            raise OSError(28, "No space left on device")

        with patch("message_board_server.json.dump", side_effect=dump_until_disk_full):
            self.store.append_message("carol", "three")
        self.assertEqual(self.store.load_messages(), [first, second])
        self.assertEqual(list(self.root.glob(".messages.json.*")), [])  # temporary file removed
        self.assertIn(logging.ERROR, _logged_levels(self.log_structured_mock))
        third = self.store.append_message("dave", "four")
        self.assertEqual(self.store.load_messages(), [first, second, third])

    def test_failed_rewrite_keeps_previous_users_on_disk(self):
        self.store.create_user("alice", "pw1")
        with patch("message_board_server.json.dump", side_effect=OSError(28, "No space left on device")):
            self.store.create_user("bob", "pw2")
        self.assertEqual(self._new_store().load_users(), {"alice": {"password": "pw1"}})
        self.assertEqual(list(self.root.glob(".users.json.*")), [])

    # worker threads

    def test_concurrent_message_appends_are_all_kept(self):
        def send(worker):
            for i in range(10):
                self.store.append_message(f"user{worker}", f"message {worker}-{i}")

        threads = [threading.Thread(target=send, args=(worker,)) for worker in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        contents = [m["content"] for m in self.store.load_messages()]
        self.assertEqual(len(contents), 80)
        self.assertEqual(set(contents), {f"message {w}-{i}" for w in range(8) for i in range(10)})
        for worker in range(8):  # each worker's messages keep their order
            own = [c for c in contents if c.startswith(f"message {worker}-")]
            self.assertEqual(own, [f"message {worker}-{i}" for i in range(10)])

    def test_concurrent_user_changes_are_all_saved(self):
        def register_and_login(worker):
            username = f"user{worker}"
            self.store.create_user(username, "pw")
            for _ in range(5):
                self.store.start_session(username)

        threads = [threading.Thread(target=register_and_login, args=(worker,)) for worker in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(self.store.users), 8)
        self.assertEqual(len(self.store.session_index), 8)
        reloaded = self._new_store()
        self.assertEqual(reloaded.load_users(), self.store.users)
        self.assertEqual(reloaded.session_index, self.store.session_index)


class TestStaticFileServer(TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp_dir.cleanup)
        self.root = Path(self.tmp_dir.name)
        (self.root / "index.html").write_text("<h1>home</h1>", encoding="utf-8")
        (self.root / "app.js").write_text("console.log(1)", encoding="utf-8")
        (self.root / "notes.md").write_text("# notes", encoding="utf-8")
        (self.root / "docs").mkdir()
        (self.root / "docs" / "index.html").write_text("<h1>docs</h1>", encoding="utf-8")
        (self.root / "empty").mkdir()
        (self.root / "users.json").write_text("{}", encoding="utf-8")
        self.static_files = StaticFileServer(self.root, "index.html", hidden_paths=(self.root / "users.json",))
        log_patcher = patch("message_board_server.log_structured")
        log_patcher.start()
        self.addCleanup(log_patcher.stop)

    def test_root_serves_index(self):
        self.assertEqual(self.static_files.serve("/"), (200, "text/html", b"<h1>home</h1>"))
        self.assertEqual(self.static_files.serve("/index.html"), (200, "text/html", b"<h1>home</h1>"))

    def test_content_type_from_extension(self):
        self.assertEqual(self.static_files.serve("/app.js"), (200, "text/javascript", b"console.log(1)"))
        self.assertEqual(self.static_files.serve("/notes.md"), (200, "text/plain", b"# notes"))

    def test_directory_falls_back_to_index(self):
        self.assertEqual(self.static_files.serve("/docs"), (200, "text/html", b"<h1>docs</h1>"))
        self.assertEqual(self.static_files.serve("/docs/"), (200, "text/html", b"<h1>docs</h1>"))

    def test_directory_without_index(self):
        status_code, content_type, body = self.static_files.serve("/empty")
        self.assertEqual((status_code, content_type), (404, "text/html"))
        self.assertIn(b"/empty", body)

    def test_missing_file_page_quotes_requested_and_resolved_paths(self):
        status_code, content_type, body = self.static_files.serve("/missing.css")
        self.assertEqual((status_code, content_type), (404, "text/html"))
        self.assertIn(b"/missing.css", body)
        self.assertIn(str(self.root.resolve() / "missing.css").encode("utf-8"), body)

    def test_paths_outside_root_are_not_served(self):
        self.assertEqual(self.static_files.serve("/../../etc/passwd")[0], 404)

    def test_hidden_data_files_are_not_served(self):
        self.assertEqual(self.static_files.serve("/users.json")[0], 404)

    def test_unresolvable_path_is_not_found(self):
        self.assertIsNone(self.static_files.resolve("/a\x00b"))
        status_code, content_type, _ = self.static_files.serve("/a\x00b")
        self.assertEqual((status_code, content_type), (404, "text/html"))


class TestRouteTable(TestCase):
    def test_default_routes(self):
        table = build_route_table(ROUTES)
        self.assertEqual(len(table), len(ROUTES))
        self.assertEqual(table[("GET", "/api/check-auth")], "_handle_check_auth")
        self.assertEqual(table[("POST", "/send-message")], "_handle_send_message")

    def test_duplicate_route_is_refused(self):
        with self.assertRaises(ValueError):
            build_route_table((*ROUTES, ("post", "/login", "_handle_register")))

    def test_unknown_handler_is_refused(self):
        with self.assertRaises(ValueError):
            build_route_table((("GET", "/tags", "_handle_get_tags"),))


class TestMessageBoardApp(TestCase):
    def setUp(self):
        log_patcher = patch("message_board_server.log_structured")
        self.log_structured_mock = log_patcher.start()
        self.addCleanup(log_patcher.stop)
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp_dir.cleanup)
        self.root = Path(self.tmp_dir.name)
        (self.root / "index.html").write_text("<h1>home</h1>", encoding="utf-8")
        self.store = JsonFileStore(self.root / "users.json", self.root / "messages.json", self.root / "search.log")
        self.store.ensure_data_files()
        self.store.load_users()
        self.app = MessageBoardApp(self.store, StaticFileServer(self.root, "index.html"))

    def _request(self, method, path, form=None, cookie=None):
        status_code, headers, body = _call_app(self.app, method, path, form=form, cookie=cookie)
        if headers.get("Content-Type") == "application/json":
            return status_code, headers, json.loads(body)
        return status_code, headers, body

    def _register_and_login(self, username="alice", password="pw1"):
        self._request("POST", "/register", {"username": username, "password": password})
        _, _, data = self._request("POST", "/login", {"username": username, "password": password})
        return f"sessionId={data['sessionId']}"

    # register

    def test_register(self):
        status_code, _, data = self._request("POST", "/register", {"username": "alice", "password": "pw1"})
        self.assertEqual(status_code, 200)
        self.assertEqual(data, {"success": True, "message": "Registration successful", "username": "alice"})
        self.assertEqual(json.loads(self.store.users_path.read_text(encoding="utf-8")), {"alice": {"password": "pw1"}})

    def test_register_missing_fields(self):
        for form in ({}, {"username": "alice"}, {"username": "", "password": "pw1"}, {"password": "pw1"}):
            status_code, _, data = self._request("POST", "/register", form)
            self.assertEqual(status_code, 400)
            self.assertFalse(data["success"])
        self.assertEqual(self.store.users, {})

    def test_register_duplicate_keeps_original_password(self):
        self._request("POST", "/register", {"username": "alice", "password": "pw1"})
        status_code, _, data = self._request("POST", "/register", {"username": "alice", "password": "other"})
        self.assertEqual(status_code, 400)
        self.assertEqual(data, {"success": False, "message": "Username already exists"})
        self.assertEqual(self.store.users["alice"]["password"], "pw1")
        status_code, _, _ = self._request("POST", "/login", {"username": "alice", "password": "pw1"})
        self.assertEqual(status_code, 200)

    # login and sessions

    def test_register_login_check_auth(self):
        self._request("POST", "/register", {"username": "alice", "password": "pw1"})
        status_code, headers, data = self._request("POST", "/login", {"username": "alice", "password": "pw1"})
        self.assertEqual(status_code, 200)
        self.assertEqual(data["username"], "alice")
        self.assertEqual(headers["Set-Cookie"], session_cookie(data["sessionId"]))
        self.assertEqual(self.store.users["alice"]["sessionId"], data["sessionId"])
        status_code, _, data = self._request("GET", "/api/check-auth", cookie=f"sessionId={data['sessionId']}")
        self.assertEqual(status_code, 200)
        self.assertEqual(data, {"authenticated": True, "username": "alice"})

    def test_check_auth_anonymous(self):
        self.assertEqual(self._request("GET", "/api/check-auth")[2], {"authenticated": False})
        self.assertEqual(self._request("GET", "/api/check-auth", cookie="sessionId=nope")[2], {"authenticated": False})

    def test_login_failures_do_not_mutate_state(self):
        self._request("POST", "/register", {"username": "alice", "password": "pw1"})
        users_before = json.loads(json.dumps(self.store.users))
        file_before = self.store.users_path.read_text(encoding="utf-8")
        for form in ({"username": "alice", "password": "wrong"}, {"username": "bob", "password": "pw1"}, {}):
            status_code, headers, data = self._request("POST", "/login", form)
            self.assertEqual(status_code, 401)
            self.assertFalse(data["success"])
            self.assertNotIn("Set-Cookie", headers)
        self.assertEqual(self.store.users, users_before)
        self.assertEqual(self.store.users_path.read_text(encoding="utf-8"), file_before)

    def test_second_login_invalidates_first_session(self):
        first_cookie = self._register_and_login()
        _, _, data = self._request("POST", "/login", {"username": "alice", "password": "pw1"})
        self.assertEqual(self._request("GET", "/api/check-auth", cookie=first_cookie)[2], {"authenticated": False})
        second_cookie = f"sessionId={data['sessionId']}"
        self.assertTrue(self._request("GET", "/api/check-auth", cookie=second_cookie)[2]["authenticated"])

    def test_logout(self):
        cookie = self._register_and_login()
        status_code, headers, data = self._request("POST", "/logout", cookie=cookie)
        self.assertEqual(status_code, 200)
        self.assertEqual(data, {"success": True, "message": "Logout successful"})
        self.assertEqual(headers["Set-Cookie"], EXPIRED_SESSION_COOKIE)
        self.assertNotIn("sessionId", self.store.users["alice"])
        self.assertEqual(self._request("GET", "/api/check-auth", cookie=cookie)[2], {"authenticated": False})

    def test_logout_requires_session(self):
        status_code, headers, data = self._request("POST", "/logout")
        self.assertEqual(status_code, 401)
        self.assertEqual(data, {"success": False, "message": "Not logged in"})
        self.assertNotIn("Set-Cookie", headers)

    def test_session_survives_a_restart(self):
        cookie = self._register_and_login()
        restarted_store = JsonFileStore(self.store.users_path, self.store.messages_path, self.store.search_log_path)
        restarted_store.load_users()
        self.app = MessageBoardApp(restarted_store, StaticFileServer(self.root, "index.html"))
        self.assertEqual(
            self._request("GET", "/api/check-auth", cookie=cookie)[2], {"authenticated": True, "username": "alice"}
        )

    # messages

    def test_send_and_get_messages(self):
        cookie = self._register_and_login()
        status_code, _, data = self._request("POST", "/send-message", {"content": "hello"}, cookie=cookie)
        self.assertEqual(status_code, 200)
        self.assertEqual(data, {"success": True, "message": "Message sent"})
        status_code, _, data = self._request("GET", "/get-messages")
        self.assertEqual(status_code, 200)
        self.assertTrue(data["success"])
        self.assertEqual(len(data["messages"]), 1)
        message = data["messages"][0]
        self.assertEqual((message["username"], message["content"]), ("alice", "hello"))
        datetime.strptime(message["timestamp"], "%Y-%m-%dT%H:%M:%S.%fZ")

    def test_messages_are_returned_in_send_order(self):
        alice_cookie = self._register_and_login("alice", "pw1")
        bob_cookie = self._register_and_login("bob", "pw2")
        for cookie, content in ((alice_cookie, "one"), (bob_cookie, "two"), (alice_cookie, "three")):
            self._request("POST", "/send-message", {"content": content}, cookie=cookie)
        first_read = self._request("GET", "/get-messages")[2]["messages"]
        authors_and_contents = [(m["username"], m["content"]) for m in first_read]
        self.assertEqual(authors_and_contents, [("alice", "one"), ("bob", "two"), ("alice", "three")])
        timestamps = [m["timestamp"] for m in first_read]
        self.assertEqual(timestamps, sorted(timestamps))
        self.assertEqual(self._request("GET", "/get-messages")[2]["messages"], first_read)

    def test_send_message_requires_session(self):
        for cookie in (None, "sessionId=unknown"):
            status_code, _, data = self._request("POST", "/send-message", {"content": "hello"}, cookie=cookie)
            self.assertEqual(status_code, 401)
            self.assertFalse(data["success"])
        self.assertEqual(self.store.load_messages(), [])

    def test_send_message_requires_content(self):
        cookie = self._register_and_login()
        status_code, _, data = self._request("POST", "/send-message", {"content": ""}, cookie=cookie)
        self.assertEqual(status_code, 400)
        self.assertEqual(data, {"success": False, "message": "Message content cannot be empty"})
        self.assertEqual(self.store.load_messages(), [])

    def test_get_messages_with_corrupted_file(self):
        self.store.messages_path.write_text("not json", encoding="utf-8")
        self.assertEqual(self._request("GET", "/get-messages")[2], {"success": True, "messages": []})

    # search

    def test_search_requires_query(self):
        status_code, _, data = self._request("POST", "/search", {"query": "", "username": "alice"})
        self.assertEqual(status_code, 400)
        self.assertEqual(data, {"success": False, "message": "Search query cannot be empty"})
        self.assertFalse(self.store.search_log_path.exists())

    def test_search_without_username_is_anonymous(self):
        status_code, _, data = self._request("POST", "/search", {"query": "cats"})
        self.assertEqual(status_code, 200)
        self.assertEqual(data, {"success": True, "message": "Search recorded"})
        line = self.store.search_log_path.read_text(encoding="utf-8")
        self.assertTrue(line.endswith(f': [{ANONYMOUS_USERNAME}] "cats"\n'))

    def test_search_with_username(self):
        self._request("POST", "/search", {"query": "dogs", "username": "bob"})
        self.assertIn('[bob] "dogs"', self.store.search_log_path.read_text(encoding="utf-8"))

    def test_search_log_write_failure(self):
        self.store.search_log_path = self.root  # appending to a directory fails
        status_code, _, data = self._request("POST", "/search", {"query": "cats"})
        self.assertEqual(status_code, 500)
        self.assertEqual(data, {"success": False, "message": "Server error"})

    # dispatch

    def test_unmatched_routes_fall_through_to_static_files(self):
        expected_headers = {"Content-Type": "text/html", "Content-Length": "13"}
        self.assertEqual(self._request("GET", "/"), (200, expected_headers, b"<h1>home</h1>"))
        self.assertEqual(self._request("GET", "/register")[0], 404)
        self.assertEqual(self._request("POST", "/unknown", {"a": "b"})[0], 404)
        self.assertEqual(self._request("DELETE", "/get-messages")[0], 404)
        self.assertEqual(self._request("GET", "/api/check-auth/")[0], 404)

    def test_nul_byte_in_path_gets_static_not_found_page(self):
        status_code, headers, body = self._request("GET", "/a\x00b")
        self.assertEqual(status_code, 404)
        self.assertEqual(headers["Content-Type"], "text/html")
        self.assertIn(b"404 Not Found", body)

    def test_unexpected_error_returns_500(self):
        with patch.object(self.store, "load_messages", side_effect=RuntimeError("boom")):
            status_code, _, data = self._request("GET", "/get-messages")
        self.assertEqual(status_code, 500)
        self.assertEqual(data, {"success": False, "message": "Internal Server Error"})
        self.assertIn(logging.ERROR, _logged_levels(self.log_structured_mock))

    def test_alice_scenario(self):
        self.assertEqual(self._request("POST", "/register", {"username": "alice", "password": "pw1"})[0], 200)
        status_code, _, data = self._request("POST", "/login", {"username": "alice", "password": "pw1"})
        self.assertEqual(status_code, 200)
        cookie = f"sessionId={data['sessionId']}"
        self.assertEqual(self._request("POST", "/send-message", {"content": "hello"}, cookie=cookie)[0], 200)
        messages = self._request("GET", "/get-messages")[2]["messages"]
        self.assertEqual(len(messages), 1)
        without_timestamp = {k: v for k, v in messages[0].items() if k != "timestamp"}
        self.assertEqual(without_timestamp, {"username": "alice", "content": "hello"})
        self.assertEqual(set(messages[0]), {"username", "content", "timestamp"})
