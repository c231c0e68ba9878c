#!/usr/bin/env python3
"""
Todo List Server - Single File Multi-User Todo Application

A small, framework-free WSGI implementation of a multi-user to-do list: users sign up, log in, and manage personal
lists of todos, each holding tasks with a completion state.

## Key Design Decisions
- **In-memory state**: sessions, users and todo lists live in an `AppState` owned by the WSGI handler
  - Users and todo lists are saved as JSON after each mutation if USERS_FILE_PATH / TODO_LISTS_FILE_PATH are set
  - Saves are fire-and-forget: the response never waits for the disk, a crash right after a mutation may lose it
- **Cookie sessions**: the `_SID` cookie maps to a username until logout, or until the session is the least
  recently used one once MAX_SESSIONS is reached
- **Salted passwords**: PBKDF2-SHA256, compared in constant time
- **Single file**: server, model and tests live in one module
- **Structured logging**: JSON lines (see `Deploy`)

## Deploy
- You should set LOG_LEVEL / LOG_FILE / LOG_MAX_SIZE / LOG_BACKUP_COUNT to enable rotating logs
- You should set CLIENT_IP_HEADER when running behind a reverse proxy (e.g., "X-Forwarded-For" or "X-Real-IP")
  - Without this setting, all requests will appear to come from the proxy's IP address in the logs
- You should still limit the max body size per request through a reverse proxy
- `THREADS` > 1 is supported, but requests are still handled one at a time against the in-memory state
"""

import hashlib
import hmac
import html
import json
import logging
import logging.handlers
import mimetypes
import os
import re
import secrets
import sys
import tempfile
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from http import HTTPStatus
from http.cookies import CookieError, SimpleCookie
from io import BytesIO
from os import getenv
from pathlib import Path
from time import time_ns
from traceback import format_tb
from typing import Dict, List, Optional
from unittest import TestCase
from unittest.mock import patch
from urllib.parse import parse_qs, urlencode
from wsgiref.util import setup_testing_defaults

from waitress import serve

#### CONFIGURATION #####################################################################################################


# url prefix
PATH_PREFIX = getenv("PATH_PREFIX", "")
PATH_PREFIX_PARTS = [part for part in PATH_PREFIX.strip("/").split("/") if part]
# static pages
PUBLIC_DIR = Path(getenv("PUBLIC_DIR") or Path(__file__).resolve().parent / "public")
# sessions
SESSION_COOKIE_NAME = getenv("SESSION_COOKIE_NAME", "_SID")
MAX_SESSIONS = int(getenv("MAX_SESSIONS") or 3000)
# client ip detection
CLIENT_IP_HEADER = getenv("CLIENT_IP_HEADER")  # Optional header name for client IP detection
# server
THREADS = int(getenv("THREADS") or 1)
# logging
LOG_LEVEL = getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = getenv("LOG_FILE")  # Optional file logging
LOG_MAX_SIZE = int(getenv("LOG_MAX_SIZE", 10 * 1024 * 1024))  # 10MB default
LOG_BACKUP_COUNT = int(getenv("LOG_BACKUP_COUNT", 5))
# data persistence
TODO_LISTS_FILE_PATH = (lambda path: Path(path) if path else None)(getenv("TODO_LISTS_FILE_PATH"))
USERS_FILE_PATH = (lambda path: Path(path) if path else None)(getenv("USERS_FILE_PATH"))
# credentials policy
MIN_LEN_USER_USERNAME = int(getenv("MIN_LEN_USER_USERNAME", 4))
MAX_LEN_USER_USERNAME = int(getenv("MAX_LEN_USER_USERNAME", 60))
MIN_LEN_USER_PASSWORD = int(getenv("MIN_LEN_USER_PASSWORD", 4))
MAX_LEN_USER_PASSWORD = int(getenv("MAX_LEN_USER_PASSWORD", 60))
PASSWORD_HASH_ITERATIONS = int(getenv("PASSWORD_HASH_ITERATIONS", 100_000))
USERNAME_PATTERN = re.compile(r"[A-Za-z0-9]+")
# max lengths for fields in models
MAX_LEN_TODO_TITLE = int(getenv("MAX_LEN_TODO_TITLE", 200))
MAX_LEN_TASK_NAME = int(getenv("MAX_LEN_TASK_NAME", 200))


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
    # Optional file handler with rotation
    if LOG_FILE:
        file_handler = logging.handlers.RotatingFileHandler(
            LOG_FILE, maxBytes=LOG_MAX_SIZE, backupCount=LOG_BACKUP_COUNT
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


main_logger = setup_logging()
auth_logger = logging.getLogger("auth")
http_logger = logging.getLogger("http")
storage_logger = logging.getLogger("storage")
session_management_logger = logging.getLogger("storage.session_management")
security_logger = logging.getLogger("security")
config_logger = logging.getLogger("config")
lifecycle_logger = logging.getLogger("lifecycle")


def log_structured(logger, level, message, category=None, **extra_data_fields):
    """Helper function to log structured data as JSON"""
    logger.log(level, message, extra={"category": category or "general", "data": extra_data_fields})


#### HELPERS ###########################################################################################################


def hash_password(password: str, salt: Optional[str] = None, iterations: Optional[int] = None) -> str:
    """Salted PBKDF2-SHA256, stored as `iterations$salt$hexdigest`"""
    salt = salt or secrets.token_hex(16)
    iterations = iterations or PASSWORD_HASH_ITERATIONS
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), iterations).hex()
    return f"{iterations}${salt}${digest}"


def verify_password(password: str, stored_password: str) -> bool:
    iterations, _, rest = stored_password.partition("$")
    salt, _, _ = rest.partition("$")
    if not iterations.isdecimal() or not salt:
        return False
    return hmac.compare_digest(hash_password(password, salt, int(iterations)), stored_password)


def normalize_id(value) -> Optional[str]:
    """ids travel as strings, but JSON clients may send plain integers"""
    if type(value) is int:
        return str(value)
    return value if type(value) is str else None


def next_counter(ids) -> int:
    """One past the largest numeric id, 0 when there is none"""
    numbers = [int(_id) for _id in ids if _id.isdecimal()]
    return max(numbers) + 1 if numbers else 0


def check_text_field(value, name: str, max_len: int) -> str:
    if type(value) is not str or len(value) > max_len:
        raise InvalidFieldError(f"{name} is expected as a string of length <= {max_len}")
    return value


#### IMPLEMENTATION ####################################################################################################


class UnknownItemError(LookupError):
    """No todo or task with the given id in the user's list"""


class InvalidFieldError(ValueError):
    pass


class RegistrationError(ValueError):
    """Sign-up data breaks the username / password policy, or the username is taken"""


class Task:
    def __init__(self, task_id: str, name: str, status: bool = False):
        self.id = task_id
        self.name = name
        self.status = status

    def to_dict(self) -> Dict:
        return {"name": self.name, "id": self.id, "status": self.status}

    @classmethod
    def from_dict(cls, record: Dict) -> "Task":
        status = record.get("status", False)
        if type(status) is not bool:
            raise TypeError(f"task status is expected as a boolean, got {status!r}")
        return cls(str(record["id"]), record["name"], status)


class Todo:
    """
    A titled list of tasks
    Task ids are `<todo id>_<counter>`, the counter only grows so a deleted task id is never handed out again
    """

    def __init__(self, todo_id: str, title: str, tasks: Optional[List[Task]] = None, next_task_id=None):
        self.id = todo_id
        self.title = title
        self.tasks: List[Task] = tasks or []
        derived_next_task_id = next_counter(task.id.rpartition("_")[2] for task in self.tasks)
        self.next_task_id = max(next_task_id or 0, derived_next_task_id)

    def to_dict(self, with_counters: bool = False) -> Dict:
        record = {"title": self.title, "id": self.id, "tasks": [task.to_dict() for task in self.tasks]}
        if with_counters:
            record["nextTaskId"] = self.next_task_id
        return record

    @classmethod
    def from_dict(cls, record: Dict) -> "Todo":
        tasks = [Task.from_dict(task_record) for task_record in record.get("tasks", [])]
        return cls(str(record["id"]), record["title"], tasks, record.get("nextTaskId"))

    def get_task(self, task_id) -> Task:
        _id = normalize_id(task_id)
        task = next((task for task in self.tasks if task.id == _id), None)
        if task is None:
            raise UnknownItemError(f"no task {task_id!r} in todo {self.id!r}")
        return task

    def add_task(self, name: str) -> Task:
        task = Task(f"{self.id}_{self.next_task_id}", name)
        self.next_task_id += 1
        self.tasks.append(task)
        return task

    def delete_task(self, task_id):
        self.tasks.remove(self.get_task(task_id))


class TodoList:
    """
    Ordered todos of a single user: new todos go first, new tasks go last in their todo
    Every mutation returns the full serialized list, which is what the client receives
    """

    def __init__(self, todos: Optional[List[Todo]] = None, next_todo_id=None):
        self.todos: List[Todo] = todos or []
        self.next_todo_id = max(next_todo_id or 0, next_counter(todo.id for todo in self.todos))

    @classmethod
    def load(cls, records: List[Dict], next_todo_id=None) -> "TodoList":
        return cls([Todo.from_dict(record) for record in records], next_todo_id)

    @classmethod
    def from_snapshot(cls, snapshot) -> "TodoList":
        """Accepts both the bare serialized list and the `snapshot()` format"""
        if isinstance(snapshot, list):
            return cls.load(snapshot)
        return cls.load(snapshot.get("todos", []), snapshot.get("nextTodoId"))

    def serialize(self, with_counters: bool = False) -> List[Dict]:
        return [todo.to_dict(with_counters) for todo in self.todos]

    def snapshot(self) -> Dict:
        """Persistence format, keeps the id counters so that ids are not reused after a restart"""
        return {"nextTodoId": self.next_todo_id, "todos": self.serialize(with_counters=True)}

    def get_todo(self, todo_id) -> Todo:
        _id = normalize_id(todo_id)
        todo = next((todo for todo in self.todos if todo.id == _id), None)
        if todo is None:
            raise UnknownItemError(f"no todo {todo_id!r}")
        return todo

    def add_todo(self, title) -> List[Dict]:
        todo = Todo(str(self.next_todo_id), check_text_field(title, "todoTitle", MAX_LEN_TODO_TITLE))
        self.next_todo_id += 1
        self.todos.insert(0, todo)
        log_structured(storage_logger, logging.DEBUG, "todo added", operation="add_todo", todo_id=todo.id)
        return self.serialize()

    def rename_todo(self, todo_id, title) -> List[Dict]:
        todo = self.get_todo(todo_id)
        todo.title = check_text_field(title, "todoTitle", MAX_LEN_TODO_TITLE)
        return self.serialize()

    def delete_todo(self, todo_id) -> List[Dict]:
        self.todos.remove(self.get_todo(todo_id))
        log_structured(storage_logger, logging.DEBUG, "todo deleted", operation="delete_todo", todo_id=todo_id)
        return self.serialize()

    def add_task(self, todo_id, name) -> List[Dict]:
        todo = self.get_todo(todo_id)
        task = todo.add_task(check_text_field(name, "taskName", MAX_LEN_TASK_NAME))
        log_structured(storage_logger, logging.DEBUG, "task added", operation="add_task", task_id=task.id)
        return self.serialize()

    def rename_task(self, todo_id, task_id, name) -> List[Dict]:
        task = self.get_todo(todo_id).get_task(task_id)
        task.name = check_text_field(name, "newName", MAX_LEN_TASK_NAME)
        return self.serialize()

    def toggle_task_status(self, todo_id, task_id) -> List[Dict]:
        task = self.get_todo(todo_id).get_task(task_id)
        task.status = not task.status
        return self.serialize()

    def delete_task(self, todo_id, task_id) -> List[Dict]:
        self.get_todo(todo_id).delete_task(task_id)
        log_structured(storage_logger, logging.DEBUG, "task deleted", operation="delete_task", task_id=task_id)
        return self.serialize()


class SessionStore:
    """
    Maps opaque session ids to session attributes (only `userName` for now)
    Sessions live until logout; once max_sessions is reached the least recently used one is evicted
    """

    def __init__(self, max_sessions=MAX_SESSIONS):
        if max_sessions < 1:
            raise ValueError("invalid value for max_sessions")
        self.max_sessions: int = max_sessions
        self.sessions: Dict[str, Dict[str, str]] = {}  # insertion order is the recency order

    def add_session(self, username: str) -> str:
        session_id = str(uuid.uuid4())
        while session_id in self.sessions:
            session_id = str(uuid.uuid4())
        if len(self.sessions) >= self.max_sessions:
            evicted_session_id = next(iter(self.sessions))
            del self.sessions[evicted_session_id]
            log_structured(
                security_logger,
                logging.WARNING,
                "Rate limit reached - Session storage full, evicting least recently used session",
                rate_limit_type="session_storage",
                max_sessions=self.max_sessions,
                evicted_session_id=evicted_session_id,
            )
        self.sessions[session_id] = {"userName": username}
        log_structured(
            session_management_logger,
            logging.INFO,
            "New session created",
            session_event="created",
            username=username,
            total_sessions=len(self.sessions),
        )
        return session_id

    def is_valid_sid(self, session_id) -> bool:
        return type(session_id) is str and session_id in self.sessions

    def get_session_attribute(self, session_id: str, key: str = "userName"):
        """Raises KeyError for an unknown session id: check `is_valid_sid` first"""
        attributes = self.sessions.pop(session_id)
        self.sessions[session_id] = attributes
        return attributes[key]

    def clear_session(self, session_id):
        removed = self.sessions.pop(session_id, None) is not None
        log_structured(
            session_management_logger,
            logging.DEBUG,
            "Session cleared" if removed else "Session clear skipped - unknown session",
            session_event="cleared",
            removed=removed,
        )


class UserDirectory:
    """username -> credential record, passwords are only kept hashed"""

    def __init__(self):
        self.users: Dict[str, Dict[str, str]] = {}

    def exists(self, username) -> bool:
        return type(username) is str and username in self.users

    def verify_credentials(self, username, password) -> bool:
        if not self.exists(username) or type(password) is not str:
            return False
        return verify_password(password, self.users[username]["password"])

    def register(self, username, password):
        if type(username) is not str or type(password) is not str:
            raise RegistrationError("userName and password are expected as strings")
        if not USERNAME_PATTERN.fullmatch(username):
            raise RegistrationError("userName must only contain letters and digits")
        if not MIN_LEN_USER_USERNAME <= len(username) <= MAX_LEN_USER_USERNAME:
            err_str = f"userName length must be between {MIN_LEN_USER_USERNAME} and {MAX_LEN_USER_USERNAME}"
            raise RegistrationError(err_str)
        if not MIN_LEN_USER_PASSWORD <= len(password) <= MAX_LEN_USER_PASSWORD:
            err_str = f"password length must be between {MIN_LEN_USER_PASSWORD} and {MAX_LEN_USER_PASSWORD}"
            raise RegistrationError(err_str)
        if self.exists(username):
            raise RegistrationError("userName is already taken")
        self.users[username] = {"password": hash_password(password)}

    def serialize(self) -> Dict[str, Dict[str, str]]:
        return {username: dict(record) for username, record in self.users.items()}

    def load(self, records: Dict[str, Dict[str, str]]):
        for username, record in records.items():
            if type(record) is not dict or type(record.get("password")) is not str:
                log_structured(storage_logger, logging.ERROR, "Skipping invalid user record", username=username)
                continue
            self.users[username] = {"password": record["password"]}


class DataStore:
    """
    Load / save interface for the user directory and the todo lists, one JSON file each
    Saves are submitted to a single background worker: they land in submission order and the caller never waits
    A path set to None disables persistence for that file
    """

    def __init__(self, users_file_path: Optional[Path] = None, todo_lists_file_path: Optional[Path] = None):
        self.users_file_path = users_file_path
        self.todo_lists_file_path = todo_lists_file_path
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="data-store")

    def load_users(self) -> Dict:
        return self._load(self.users_file_path, "users")

    def load_todo_lists(self) -> Dict:
        return self._load(self.todo_lists_file_path, "todo_lists")

    def save_users_async(self, data: Dict) -> Optional[Future]:
        return self._submit(self.users_file_path, data, "users")

    def save_todo_lists_async(self, data: Dict) -> Optional[Future]:
        return self._submit(self.todo_lists_file_path, data, "todo_lists")

    def close(self):
        """Waits for pending saves"""
        self.executor.shutdown(wait=True)

    def _submit(self, path: Optional[Path], data: Dict, name: str) -> Optional[Future]:
        if not path:
            log_structured(storage_logger, logging.DEBUG, "Data persistence skipped - path not configured", name=name)
            return None
        return self.executor.submit(self._save, path, data, name)

    def _save(self, path: Path, data: Dict, name: str) -> bool:
        try:
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_path, path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
            log_structured(
                storage_logger, logging.DEBUG, "Data saved", name=name, data_file_path=str(path), operation="save"
            )
            return True
        except Exception as e:
            log_structured(
                storage_logger,
                logging.ERROR,
                "Error saving data",
                name=name,
                data_file_path=str(path),
                error=str(e),
                operation="save_error",
            )
        return False

    def _load(self, path: Optional[Path], name: str) -> Dict:
        if not path:
            log_structured(storage_logger, logging.DEBUG, "Data persistence skipped - path not configured", name=name)
            return {}
        try:
            with path.open("r") as f:
                data = json.load(f)
            if type(data) is not dict:
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            log_structured(
                storage_logger,
                logging.INFO,
                "Data loaded successfully",
                name=name,
                data_file_path=str(path),
                entry_count=len(data),
                operation="load_success",
            )
            return data
        except FileNotFoundError:
            log_structured(
                storage_logger,
                logging.INFO,
                "No data file found - starting with empty storage",
                name=name,
                data_file_path=str(path),
                operation="load_no_file",
            )
        except Exception as e:
            log_structured(
                storage_logger,
                logging.ERROR,
                "Error loading data",
                name=name,
                data_file_path=str(path),
                error=str(e),
                operation="load_error",
            )
        return {}


class AppState:
    """Everything a request may read or mutate, owned by the WSGI handler and handed to each request"""

    def __init__(self, sessions=None, users=None, todo_lists=None, data_store=None):
        self.sessions: SessionStore = sessions or SessionStore()
        self.users: UserDirectory = users or UserDirectory()
        self.todo_lists: Dict[str, TodoList] = todo_lists if todo_lists is not None else {}
        self.data_store: DataStore = data_store or DataStore()

    @classmethod
    def from_data_store(cls, data_store: DataStore, sessions: Optional[SessionStore] = None) -> "AppState":
        users = UserDirectory()
        users.load(data_store.load_users())
        todo_lists = {}
        for username, snapshot in data_store.load_todo_lists().items():
            try:
                todo_lists[username] = TodoList.from_snapshot(snapshot)
            except (KeyError, TypeError, AttributeError) as e:
                log_structured(
                    storage_logger, logging.ERROR, "Skipping invalid todo list", username=username, error=str(e)
                )
        log_structured(
            lifecycle_logger,
            logging.INFO,
            "State loaded",
            user_count=len(users.users),
            todo_list_count=len(todo_lists),
        )
        return cls(sessions, users, todo_lists, data_store)

    def todo_list_for(self, username: str) -> TodoList:
        if username not in self.todo_lists:
            self.todo_lists[username] = TodoList()
        return self.todo_lists[username]

    def save_users(self) -> Optional[Future]:
        return self.data_store.save_users_async(self.users.serialize())

    def save_todo_lists(self) -> Optional[Future]:
        snapshots = {username: todo_list.snapshot() for username, todo_list in self.todo_lists.items()}
        return self.data_store.save_todo_lists_async(snapshots)


# (method, route without leading slash) -> handler method name
ROUTES = {
    ("GET", ""): "_handle_main_page",
    ("GET", "index.html"): "_handle_main_page",
    ("GET", "user/todoList"): "_handle_get_todo_list",
    ("GET", "user/userName"): "_handle_get_user_name",
    ("POST", "signUp"): "_handle_sign_up",
    ("POST", "login"): "_handle_login",
    ("POST", "logout"): "_handle_logout",
    ("POST", "userNameAvailability"): "_handle_user_name_availability",
    ("POST", "user/addTodo"): "_handle_add_todo",
    ("POST", "user/renameTodo"): "_handle_rename_todo",
    ("POST", "user/deleteTodo"): "_handle_delete_todo",
    ("POST", "user/addTask"): "_handle_add_task",
    ("POST", "user/renameTask"): "_handle_rename_task",
    ("POST", "user/toggleTaskStatus"): "_handle_toggle_task_status",
    ("POST", "user/deleteTask"): "_handle_delete_task",
}
# mutation routes also answer without the `user/` prefix
ROUTE_ALIASES = {route[len("user/") :]: route for method, route in ROUTES if method == "POST" and "/" in route}


class TodoRequest:
    """One request against the todo application: access gate, field validation, routing and response shaping"""

    def __init__(self, state: AppState, environ, start_response):
        self.state = state
        self.environ = environ
        self.start_response = start_response
        self._request_start_time = time_ns()
        self._request_method = environ["REQUEST_METHOD"]
        self._request_path = environ.get("PATH_INFO") or "/"
        self._body = None
        self.session_id = None
        self.current_user = None

    def respond(self):
        try:
            self.session_id = self._get_session_id()
            self.current_user = self._resolve_session(self.session_id)
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
            return self._send_text(500, "Internal Server Error")

    @staticmethod
    def _require_auth(func):
        """Access gate, only executes the wrapped method if current_user is not None, else returns an empty 401"""

        def wrapper(self, *args, **kwargs):
            if self.current_user is None:
                log_structured(
                    security_logger,
                    logging.WARNING,
                    "Authentication required but not provided",
                    ip=self._get_client_ip(),
                    path=self._request_path,
                    auth_required=True,
                )
                return self._send_empty(401)
            return func(self, *args, **kwargs)

        return wrapper

    @staticmethod
    def _require_fields(*fields):
        """Field validator, returns an empty 400 if any of the fields is absent (or null) in the request body"""

        def decorator(func):
            def wrapper(self, *args, **kwargs):
                body = self._get_request_body()
                missing_fields = [field for field in fields if body.get(field) is None]
                if missing_fields:
                    log_structured(
                        http_logger,
                        logging.INFO,
                        "Bad request: missing fields",
                        path=self._request_path,
                        missing_fields=missing_fields,
                    )
                    return self._send_empty(400)
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

    def _get_session_id(self) -> Optional[str]:
        raw_cookie = self.environ.get("HTTP_COOKIE")
        if not raw_cookie:
            return None
        cookie = SimpleCookie()
        try:
            cookie.load(raw_cookie)
        except CookieError:
            log_structured(security_logger, logging.WARNING, "Malformed cookie header", ip=self._get_client_ip())
            return None
        morsel = cookie.get(SESSION_COOKIE_NAME)
        return morsel.value if morsel else None

    def _resolve_session(self, session_id) -> Optional[str]:
        if not self.state.sessions.is_valid_sid(session_id):
            return None
        return self.state.sessions.get_session_attribute(session_id, "userName")

    def _handle_request(self, method: str, path: str):
        """Route request to appropriate handler"""
        path_parts = [part for part in path.strip("/").split("/") if part]
        log_structured(
            http_logger,
            logging.INFO,
            "Request treatment started",
            method=method,
            path=path,
            ip=self._get_client_ip(),
            user=self.current_user,
        )
        if PATH_PREFIX_PARTS:
            if not path_parts[: len(PATH_PREFIX_PARTS)] == PATH_PREFIX_PARTS:
                return self._send_cannot(404, method, path)
            path_parts = path_parts[len(PATH_PREFIX_PARTS) :]
        route = "/".join(path_parts)
        route = ROUTE_ALIASES.get(route, route)
        handler_name = ROUTES.get((method, route))
        if handler_name is not None:
            return getattr(self, handler_name)()
        allowed_methods = sorted(m for m, r in ROUTES if r == route)
        if allowed_methods:
            return self._send_cannot(405, method, path, [("Allow", ", ".join(allowed_methods))])
        if method == "GET":
            return self._handle_static_page(path_parts)
        return self._send_cannot(404, method, path)

    def _get_request_body(self) -> Dict:
        """Parse the request body once, as JSON or as an urlencoded form"""
        if self._body is not None:
            return self._body
        raw_content_length = self.environ.get("CONTENT_LENGTH") or "0"
        if not raw_content_length.isdecimal():
            log_structured(http_logger, logging.WARNING, "Invalid Content-Length", content_length=raw_content_length)
            raw_content_length = "0"
        content_length = int(raw_content_length)
        raw_body = self.environ["wsgi.input"].read(content_length) if content_length > 0 else b""
        body = raw_body.decode("utf-8", errors="replace")
        content_type = self.environ.get("CONTENT_TYPE", "")
        parsed_body = {}
        if body and content_type.startswith("application/json"):
            try:
                parsed_body = json.loads(body)
            except ValueError:
                log_structured(http_logger, logging.WARNING, "Request body is not valid JSON", payload_size=len(body))
        elif body:
            parsed_body = {key: values[0] for key, values in parse_qs(body, keep_blank_values=True).items()}
        self._body = parsed_body if type(parsed_body) is dict else {}
        log_structured(
            http_logger,
            logging.DEBUG,
            "Request body received",
            payload_size=content_length,
            body_preview=body[:200],
            has_body=bool(body),
        )
        return self._body

    # responses

    def _send_response(self, status_code: int, body: bytes, headers: List):
        status_text = f"{status_code} {HTTPStatus(status_code).phrase}"
        headers = [*headers, ("Content-Length", str(len(body)))]
        log_structured(
            http_logger,
            logging.INFO,
            "Request completed",
            method=self._request_method,
            path=self._request_path,
            status_code=status_code,
            duration_ms=(time_ns() - self._request_start_time) / 1_000_000,
            response_size=len(body),
            ip=self._get_client_ip(),
        )
        self.start_response(status_text, headers)
        return [body] if body else []

    def _send_json(self, status_code: int, data, extra_headers=()):
        body = json.dumps(data, separators=(",", ":")).encode("utf-8")
        headers = [("Content-Type", "application/json; charset=utf-8"), *extra_headers]
        return self._send_response(status_code, body, headers)

    def _send_text(self, status_code: int, text: str, extra_headers=()):
        headers = [("Content-Type", "text/plain; charset=utf-8"), *extra_headers]
        return self._send_response(status_code, text.encode("utf-8"), headers)

    def _send_empty(self, status_code: int, extra_headers=()):
        return self._send_response(status_code, b"", list(extra_headers))

    def _send_not_acceptable(self):
        return self._send_text(406, HTTPStatus.NOT_ACCEPTABLE.phrase)

    def _send_redirect(self, location: str, extra_headers=()):
        return self._send_text(302, f"Found. Redirecting to {location}", [("Location", location), *extra_headers])

    def _send_cannot(self, status_code: int, method: str, path: str, extra_headers=()):
        """404 / 405 page, `Cannot METHOD path`"""
        page = (
            '<!DOCTYPE html>\n<html lang="en">\n<head>\n<meta charset="utf-8">\n<title>Error</title>\n</head>\n'
            f"<body>\n<pre>Cannot {html.escape(method)} {html.escape(path)}</pre>\n</body>\n</html>\n"
        )
        headers = [("Content-Type", "text/html; charset=utf-8"), *extra_headers]
        return self._send_response(status_code, page.encode("utf-8"), headers)

    def _send_file(self, file_path: Path):
        content_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
        if content_type.startswith("text/") or content_type in ("application/javascript", "application/json"):
            content_type += "; charset=utf-8"
        return self._send_response(200, file_path.read_bytes(), [("Content-Type", content_type)])

    @staticmethod
    def _session_cookie(session_id: str):
        return ("Set-Cookie", f"{SESSION_COOKIE_NAME}={session_id}; Path=/; HttpOnly")

    @staticmethod
    def _expired_session_cookie():
        return ("Set-Cookie", f"{SESSION_COOKIE_NAME}=; Path=/; Max-Age=0")

    # Page endpoints

    def _handle_main_page(self):
        """GET / and GET /index.html - Main page, redirects to the login page when not logged in"""
        if self.current_user is None:
            return self._send_redirect("login.html")
        index_path = PUBLIC_DIR / "index.html"
        if not index_path.is_file():
            return self._send_cannot(404, self._request_method, self._request_path)
        return self._send_file(index_path)

    def _handle_static_page(self, path_parts: List[str]):
        """GET /<file> - Any file under PUBLIC_DIR"""
        if any("\x00" in part for part in path_parts):
            return self._send_cannot(404, self._request_method, self._request_path)
        public_dir = PUBLIC_DIR.resolve()
        file_path = public_dir.joinpath(*path_parts).resolve() if path_parts else public_dir
        if not file_path.is_relative_to(public_dir) or not file_path.is_file():
            return self._send_cannot(404, self._request_method, self._request_path)
        return self._send_file(file_path)

    # Auth endpoints

    @_require_fields("userName", "password")
    def _handle_sign_up(self):
        """POST /signUp - Register, log in, and go to the main page"""
        data = self._get_request_body()
        username, password = data["userName"], data["password"]
        client_ip = self._get_client_ip()
        try:
            self.state.users.register(username, password)
        except RegistrationError as e:
            log_structured(
                auth_logger, logging.WARNING, "Registration failed", ip=client_ip, username=username, reason=str(e)
            )
            return self._send_not_acceptable()
        self.state.todo_list_for(username)
        self.state.save_users()
        self.state.save_todo_lists()
        session_id = self.state.sessions.add_session(username)
        log_structured(auth_logger, logging.INFO, "User registered successfully", ip=client_ip, username=username)
        return self._send_redirect("index.html", [self._session_cookie(session_id)])

    @_require_fields("userName", "password")
    def _handle_login(self):
        """POST /login - Login user, answers {isSuccessful}"""
        data = self._get_request_body()
        username = data["userName"]
        client_ip = self._get_client_ip()
        if not self.state.users.verify_credentials(username, data["password"]):
            log_structured(auth_logger, logging.WARNING, "Login failed: invalid credentials", ip=client_ip)
            return self._send_json(200, {"isSuccessful": False})
        session_id = self.state.sessions.add_session(username)
        log_structured(auth_logger, logging.INFO, "User logged in successfully", ip=client_ip, username=username)
        return self._send_json(200, {"isSuccessful": True}, [self._session_cookie(session_id)])

    def _handle_logout(self):
        """POST /logout - Clear the session, whether or not it is still valid"""
        if self.session_id is not None:
            self.state.sessions.clear_session(self.session_id)
        client_ip = self._get_client_ip()
        log_structured(auth_logger, logging.INFO, "User logged out", ip=client_ip, username=self.current_user)
        return self._send_empty(200, [self._expired_session_cookie()])

    @_require_fields("entered")
    def _handle_user_name_availability(self):
        """POST /userNameAvailability - Is the entered username still free"""
        entered = self._get_request_body()["entered"]
        return self._send_json(200, {"isUniq": not self.state.users.exists(entered)})

    @_require_auth
    def _handle_get_user_name(self):
        """GET /user/userName - Current user"""
        return self._send_json(200, {"userName": self.current_user})

    # Todo list endpoints

    @_require_auth
    def _handle_get_todo_list(self):
        """GET /user/todoList - Full todo list of the current user"""
        return self._send_json(200, self.state.todo_list_for(self.current_user).serialize())

    def _mutate_todo_list(self, operation: str, *args):
        """Apply a TodoList operation for the current user, answers 406 for unknown ids or unacceptable text"""
        todo_list = self.state.todo_list_for(self.current_user)
        try:
            todo_list_data = getattr(todo_list, operation)(*args)
        except (UnknownItemError, InvalidFieldError) as e:
            log_structured(
                http_logger,
                logging.WARNING,
                "Todo list operation rejected",
                "CRUD",
                operation=operation,
                user=self.current_user,
                reason=str(e),
            )
            return self._send_not_acceptable()
        self.state.save_todo_lists()
        log_structured(
            http_logger,
            logging.INFO,
            "Todo list updated",
            "CRUD",
            operation=operation,
            user=self.current_user,
            todo_count=len(todo_list_data),
            ip=self._get_client_ip(),
        )
        return self._send_json(200, todo_list_data)

    @_require_fields("todoTitle")
    @_require_auth
    def _handle_add_todo(self):
        """POST /user/addTodo - New todo, first in the list"""
        return self._mutate_todo_list("add_todo", self._get_request_body()["todoTitle"])

    @_require_fields("todoId", "todoTitle")
    @_require_auth
    def _handle_rename_todo(self):
        """POST /user/renameTodo"""
        data = self._get_request_body()
        return self._mutate_todo_list("rename_todo", data["todoId"], data["todoTitle"])

    @_require_fields("todoId")
    @_require_auth
    def _handle_delete_todo(self):
        """POST /user/deleteTodo"""
        return self._mutate_todo_list("delete_todo", self._get_request_body()["todoId"])

    @_require_fields("todoId", "taskName")
    @_require_auth
    def _handle_add_task(self):
        """POST /user/addTask - New task, last in its todo"""
        data = self._get_request_body()
        return self._mutate_todo_list("add_task", data["todoId"], data["taskName"])

    @_require_fields("todoId", "taskId", "newName")
    @_require_auth
    def _handle_rename_task(self):
        """POST /user/renameTask"""
        data = self._get_request_body()
        return self._mutate_todo_list("rename_task", data["todoId"], data["taskId"], data["newName"])

    @_require_fields("todoId", "taskId")
    @_require_auth
    def _handle_toggle_task_status(self):
        """POST /user/toggleTaskStatus"""
        data = self._get_request_body()
        return self._mutate_todo_list("toggle_task_status", data["todoId"], data["taskId"])

    @_require_fields("todoId", "taskId")
    @_require_auth
    def _handle_delete_task(self):
        """POST /user/deleteTask"""
        data = self._get_request_body()
        return self._mutate_todo_list("delete_task", data["todoId"], data["taskId"])


class TodoHandler:
    """WSGI application for the todo list server"""

    def __init__(self, state: AppState):
        self.state = state
        self.lock = threading.Lock()  # requests are applied one at a time to the in-memory state

    def __call__(self, environ, start_response):
        """WSGI application entry point"""
        with self.lock:
            return TodoRequest(self.state, environ, start_response).respond()


def run_server(port: int = 8000):
    """Run the todo list server"""
    data_store = DataStore(USERS_FILE_PATH, TODO_LISTS_FILE_PATH)
    state = AppState.from_data_store(data_store)
    log_structured(lifecycle_logger, logging.INFO, "Todo List Server starting", port=port, threads=THREADS)
    log_structured(
        config_logger,
        logging.INFO,
        "Data persistence",
        users_file_path=str(USERS_FILE_PATH) if USERS_FILE_PATH else None,
        todo_lists_file_path=str(TODO_LISTS_FILE_PATH) if TODO_LISTS_FILE_PATH else None,
    )
    log_structured(
        config_logger,
        logging.INFO,
        "Security config",
        max_sessions=MAX_SESSIONS,
        session_cookie_name=SESSION_COOKIE_NAME,
        password_hash_iterations=PASSWORD_HASH_ITERATIONS,
    )
    log_structured(
        config_logger,
        logging.INFO,
        "Field limits",
        username_len=(MIN_LEN_USER_USERNAME, MAX_LEN_USER_USERNAME),
        password_len=(MIN_LEN_USER_PASSWORD, MAX_LEN_USER_PASSWORD),
        max_len_todo_title=MAX_LEN_TODO_TITLE,
        max_len_task_name=MAX_LEN_TASK_NAME,
    )
    log_structured(
        config_logger,
        logging.INFO,
        "Logging config",
        log_level=LOG_LEVEL,
        log_file=bool(LOG_FILE),
        log_file_path=LOG_FILE,
    )
    log_structured(config_logger, logging.INFO, "Static pages", public_dir=str(PUBLIC_DIR), path_prefix=PATH_PREFIX)
    app = TodoHandler(state)

    # Document routes - using print here
    print(f"Todo List Server running on http://localhost:{port}{PATH_PREFIX}")
    print("Endpoints available:")
    print("  GET    /, /index.html  ------------------ Main page (login page when logged out)")
    print("  GET    /user/todoList  ------------------ Todo list of the current user")
    print("  GET    /user/userName  ------------------ Current user")
    print("  POST   /signUp  ------------------------- Register {userName, password}")
    print("  POST   /login  -------------------------- Login {userName, password}")
    print("  POST   /logout  ------------------------- Logout")
    print("  POST   /userNameAvailability  ----------- Check {entered}")
    print("  POST   /user/addTodo  ------------------- {todoTitle}")
    print("  POST   /user/renameTodo  ---------------- {todoId, todoTitle}")
    print("  POST   /user/deleteTodo  ---------------- {todoId}")
    print("  POST   /user/addTask  ------------------- {todoId, taskName}")
    print("  POST   /user/renameTask  ---------------- {todoId, taskId, newName}")
    print("  POST   /user/toggleTaskStatus  ---------- {todoId, taskId}")
    print("  POST   /user/deleteTask  ---------------- {todoId, taskId}")
    print("\nPress Ctrl+C to stop the server")
    try:
        serve(app, host="0.0.0.0", port=port, threads=THREADS)
    except KeyboardInterrupt:
        log_structured(lifecycle_logger, logging.INFO, "shutting down server")
    finally:
        log_structured(lifecycle_logger, logging.INFO, "waiting for pending saves")
        data_store.close()
        log_structured(lifecycle_logger, logging.INFO, "process terminating now")


if __name__ == "__main__":
    port = int(sys.argv[1]) if len(sys.argv) > 1 else 8000
    run_server(port)


#### TESTS #############################################################################################################


FRUITS_RECORDS = [{"title": "fruits", "id": "0", "tasks": [{"name": "apple", "id": "0_0", "status": True}]}]


def _fruits_todo_list():
    return TodoList.load(json.loads(json.dumps(FRUITS_RECORDS)))


class TestTodoList(TestCase):
    def setUp(self):
        self.todo_list = _fruits_todo_list()

    # load / serialize

    def test_load_then_serialize_reproduces_the_records(self):
        self.assertEqual(self.todo_list.serialize(), FRUITS_RECORDS)
        self.assertEqual(TodoList.load(self.todo_list.serialize()).serialize(), FRUITS_RECORDS)

    def test_serialize_key_order(self):
        self.assertEqual(
            json.dumps(self.todo_list.serialize(), separators=(",", ":")),
            '[{"title":"fruits","id":"0","tasks":[{"name":"apple","id":"0_0","status":true}]}]',
        )

    def test_counters_are_derived_from_loaded_ids(self):
        self.assertEqual(self.todo_list.next_todo_id, 1)
        self.assertEqual(self.todo_list.get_todo("0").next_task_id, 1)

    def test_empty_list(self):
        todo_list = TodoList()
        self.assertEqual(todo_list.serialize(), [])
        self.assertEqual(todo_list.next_todo_id, 0)

    def test_snapshot_keeps_counters(self):
        self.todo_list.add_todo("first")
        self.todo_list.delete_todo("1")
        snapshot = json.loads(json.dumps(self.todo_list.snapshot()))
        self.assertEqual(snapshot["nextTodoId"], 2)
        self.assertEqual(snapshot["todos"][0]["nextTaskId"], 1)
        restored = TodoList.from_snapshot(snapshot)
        restored.add_todo("second")
        self.assertEqual(restored.serialize()[0]["id"], "2")

    def test_non_boolean_status_is_an_invalid_record(self):
        for status in ("false", "true", 0, 1, None):
            records = [{"title": "t", "id": "0", "tasks": [{"name": "n", "id": "0_0", "status": status}]}]
            with self.assertRaises(TypeError, msg=status):
                TodoList.load(records)
        todo_list = TodoList.load([{"title": "t", "id": "0", "tasks": [{"name": "n", "id": "0_0"}]}])
        self.assertFalse(todo_list.get_todo("0").get_task("0_0").status)

    def test_from_snapshot_accepts_bare_list(self):
        self.assertEqual(TodoList.from_snapshot(FRUITS_RECORDS).serialize(), FRUITS_RECORDS)

    def test_snapshot_counter_never_goes_below_existing_ids(self):
        restored = TodoList.from_snapshot({"nextTodoId": 0, "todos": FRUITS_RECORDS})
        self.assertEqual(restored.next_todo_id, 1)

    # todos

    def test_add_todo_prepends_with_fresh_id(self):
        existing_ids = {todo["id"] for todo in self.todo_list.serialize()}
        result = self.todo_list.add_todo("newTodo")
        self.assertEqual(len(result), 2)
        self.assertEqual(result[0], {"title": "newTodo", "id": "1", "tasks": []})
        self.assertNotIn(result[0]["id"], existing_ids)
        self.assertEqual(result[1], FRUITS_RECORDS[0])

    def test_todo_ids_are_never_reused(self):
        self.todo_list.add_todo("a")
        self.todo_list.delete_todo("1")
        result = self.todo_list.add_todo("b")
        self.assertEqual(result[0]["id"], "2")

    def test_rename_todo_keeps_order(self):
        self.todo_list.add_todo("other")
        result = self.todo_list.rename_todo("0", "newName")
        self.assertEqual([todo["title"] for todo in result], ["other", "newName"])

    def test_rename_unknown_todo(self):
        with self.assertRaises(UnknownItemError):
            self.todo_list.rename_todo("invalidId", "name")
        self.assertEqual(self.todo_list.serialize(), FRUITS_RECORDS)

    def test_delete_todo_twice(self):
        self.assertEqual(self.todo_list.delete_todo("0"), [])
        with self.assertRaises(UnknownItemError):
            self.todo_list.delete_todo("0")

    def test_int_ids_are_accepted(self):
        self.assertEqual(self.todo_list.rename_todo(0, "x")[0]["title"], "x")

    def test_unsupported_id_types_are_unknown(self):
        for bad_id in (None, True, 0.0, ["0"], {"id": "0"}):
            with self.assertRaises(UnknownItemError):
                self.todo_list.delete_todo(bad_id)

    def test_add_todo_rejects_non_string_title(self):
        with self.assertRaises(InvalidFieldError):
            self.todo_list.add_todo(12)
        self.assertEqual(self.todo_list.serialize(), FRUITS_RECORDS)
        self.assertEqual(self.todo_list.next_todo_id, 1)

    @patch("todo_server.MAX_LEN_TODO_TITLE", 3)
    def test_add_todo_rejects_long_title(self):
        with self.assertRaises(InvalidFieldError):
            self.todo_list.add_todo("abcd")

    # tasks

    def test_add_task_appends_incomplete_task(self):
        result = self.todo_list.add_task("0", "newTask")
        self.assertEqual(
            result[0]["tasks"],
            [{"name": "apple", "id": "0_0", "status": True}, {"name": "newTask", "id": "0_1", "status": False}],
        )

    def test_add_task_unknown_todo(self):
        with self.assertRaises(UnknownItemError):
            self.todo_list.add_task("invalidId", "newTask")
        self.assertEqual(self.todo_list.serialize(), FRUITS_RECORDS)

    def test_task_ids_are_never_reused(self):
        self.todo_list.add_task("0", "a")
        self.todo_list.delete_task("0", "0_1")
        result = self.todo_list.add_task("0", "b")
        self.assertEqual([task["id"] for task in result[0]["tasks"]], ["0_0", "0_2"])

    def test_rename_task_keeps_status(self):
        result = self.todo_list.rename_task("0", "0_0", "mango")
        self.assertEqual(result[0]["tasks"], [{"name": "mango", "id": "0_0", "status": True}])

    def test_toggle_task_status_is_its_own_inverse(self):
        self.assertFalse(self.todo_list.toggle_task_status("0", "0_0")[0]["tasks"][0]["status"])
        self.assertEqual(self.todo_list.toggle_task_status("0", "0_0"), FRUITS_RECORDS)

    def test_delete_task(self):
        self.assertEqual(self.todo_list.delete_task("0", "0_0"), [{"title": "fruits", "id": "0", "tasks": []}])
        with self.assertRaises(UnknownItemError):
            self.todo_list.delete_task("0", "0_0")

    def test_task_operations_with_unknown_ids(self):
        for operation in ("toggle_task_status", "delete_task"):
            for todo_id, task_id in (("invalidId", "0_0"), ("0", "invalidId"), ("0", "1_0")):
                with self.assertRaises(UnknownItemError):
                    getattr(self.todo_list, operation)(todo_id, task_id)
        with self.assertRaises(UnknownItemError):
            self.todo_list.rename_task("0", "invalidId", "name")
        self.assertEqual(self.todo_list.serialize(), FRUITS_RECORDS)


class TestSessionStore(TestCase):
    def setUp(self):
        self.sessions = SessionStore(max_sessions=3)

    def test_invalid_max_sessions(self):
        with self.assertRaises(ValueError) as exc:
            SessionStore(max_sessions=0)
        self.assertEqual(str(exc.exception), "invalid value for max_sessions")

    def test_add_session(self):
        session_id = self.sessions.add_session("alice")
        self.assertTrue(self.sessions.is_valid_sid(session_id))
        self.assertEqual(self.sessions.get_session_attribute(session_id, "userName"), "alice")

    def test_session_ids_are_unique(self):
        session_ids = {self.sessions.add_session("alice") for _ in range(3)}
        self.assertEqual(len(session_ids), 3)

    def test_colliding_uuid_is_regenerated(self):
        ids = iter([uuid.UUID(int=1), uuid.UUID(int=1), uuid.UUID(int=2)])
        with patch("todo_server.uuid.uuid4", side_effect=lambda: next(ids)):
            first = self.sessions.add_session("alice")
            second = self.sessions.add_session("bob")
        self.assertNotEqual(first, second)

    def test_unknown_session(self):
        self.assertFalse(self.sessions.is_valid_sid("unknown"))
        self.assertFalse(self.sessions.is_valid_sid(None))
        with self.assertRaises(KeyError):
            self.sessions.get_session_attribute("unknown", "userName")

    def test_clear_session_is_idempotent(self):
        session_id = self.sessions.add_session("alice")
        self.sessions.clear_session(session_id)
        self.assertFalse(self.sessions.is_valid_sid(session_id))
        self.sessions.clear_session(session_id)
        self.assertEqual(self.sessions.sessions, {})

    @patch("todo_server.log_structured")
    def test_least_recently_used_session_is_evicted(self, log_structured_mock):
        first = self.sessions.add_session("a")
        second = self.sessions.add_session("b")
        third = self.sessions.add_session("c")
        self.sessions.get_session_attribute(first)
        fourth = self.sessions.add_session("d")
        self.assertFalse(self.sessions.is_valid_sid(second))
        self.assertEqual(list(self.sessions.sessions), [third, first, fourth])
        log_structured_mock.assert_any_call(
            security_logger,
            logging.WARNING,
            "Rate limit reached - Session storage full, evicting least recently used session",
            rate_limit_type="session_storage",
            max_sessions=3,
            evicted_session_id=second,
        )


class TestUserDirectory(TestCase):
    def setUp(self):
        self.users = UserDirectory()
        self.users.register("userName", "password")

    def test_register_and_verify(self):
        self.assertTrue(self.users.exists("userName"))
        self.assertTrue(self.users.verify_credentials("userName", "password"))
        self.assertFalse(self.users.verify_credentials("userName", "invalid"))
        self.assertFalse(self.users.verify_credentials("invalid", "password"))
        self.assertFalse(self.users.verify_credentials("userName", None))

    def test_password_is_not_stored_in_clear(self):
        stored_password = self.users.users["userName"]["password"]
        self.assertNotIn("password", stored_password.split("$"))
        self.assertEqual(len(stored_password.split("$")), 3)

    def test_same_password_gets_different_salts(self):
        self.users.register("otherUser", "password")
        self.assertNotEqual(self.users.users["userName"]["password"], self.users.users["otherUser"]["password"])

    def test_register_rejections(self):
        for username, password in (
            ("as", "password"),  # too short
            ("as as", "password"),  # not alphanumeric
            ("user_name", "password"),
            ("x" * (MAX_LEN_USER_USERNAME + 1), "password"),
            ("asas", "pas"),  # password too short
            ("asas", "p" * (MAX_LEN_USER_PASSWORD + 1)),
            ("userName", "password"),  # taken
            (1234, "password"),
            ("asas", None),
        ):
            with self.assertRaises(RegistrationError, msg=(username, password)):
                self.users.register(username, password)
        self.assertEqual(list(self.users.users), ["userName"])

    def test_minimum_lengths_are_accepted(self):
        self.users.register("abcd", "1234")
        self.assertTrue(self.users.verify_credentials("abcd", "1234"))

    def test_serialize_then_load(self):
        restored = UserDirectory()
        restored.load(json.loads(json.dumps(self.users.serialize())))
        self.assertTrue(restored.verify_credentials("userName", "password"))

    @patch("todo_server.log_structured")
    def test_load_skips_invalid_records(self, log_structured_mock):
        restored = UserDirectory()
        restored.load({"a": "password", "b": {}, "c": {"password": hash_password("pass")}})
        self.assertEqual(list(restored.users), ["c"])

    def test_malformed_stored_password_never_verifies(self):
        self.users.users["broken"] = {"password": "plaintext"}
        self.assertFalse(self.users.verify_credentials("broken", "plaintext"))


class TestDataStore(TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.users_file_path = Path(self.tmp_dir.name) / "users.json"
        self.todo_lists_file_path = Path(self.tmp_dir.name) / "todoLists.json"
        self.data_store = DataStore(self.users_file_path, self.todo_lists_file_path)

    def tearDown(self):
        self.data_store.close()
        self.tmp_dir.cleanup()

    @patch("todo_server.log_structured")
    def test_missing_files_load_as_empty(self, log_structured_mock):
        self.assertEqual(self.data_store.load_users(), {})
        self.assertEqual(self.data_store.load_todo_lists(), {})

    @patch("todo_server.log_structured")
    def test_unconfigured_paths_skip_persistence(self, log_structured_mock):
        data_store = DataStore()
        self.assertIsNone(data_store.save_users_async({"a": {}}))
        self.assertEqual(data_store.load_todo_lists(), {})
        data_store.close()

    @patch("todo_server.log_structured")
    def test_save_then_load(self, log_structured_mock):
        todo_list = _fruits_todo_list()
        self.assertTrue(self.data_store.save_todo_lists_async({"alice": todo_list.snapshot()}).result())
        self.assertTrue(self.data_store.save_users_async({"alice": {"password": "x"}}).result())
        self.assertEqual(self.data_store.load_users(), {"alice": {"password": "x"}})
        loaded = self.data_store.load_todo_lists()
        self.assertEqual(TodoList.from_snapshot(loaded["alice"]).serialize(), FRUITS_RECORDS)
        self.assertEqual([p.name for p in Path(self.tmp_dir.name).iterdir() if p.suffix == ".tmp"], [])

    @patch("todo_server.log_structured")
    def test_saves_land_in_order(self, log_structured_mock):
        futures = [self.data_store.save_users_async({"user": {"password": str(i)}}) for i in range(20)]
        self.assertTrue(all(future.result() for future in futures))
        self.assertEqual(self.data_store.load_users(), {"user": {"password": "19"}})

    @patch("todo_server.log_structured")
    def test_corrupt_file_loads_as_empty(self, log_structured_mock):
        self.users_file_path.write_text("{not json")
        self.todo_lists_file_path.write_text("[]")
        self.assertEqual(self.data_store.load_users(), {})
        self.assertEqual(self.data_store.load_todo_lists(), {})
        self.assertEqual(log_structured_mock.call_args_list[-1].args[2], "Error loading data")

    @patch("todo_server.log_structured")
    def test_save_error_is_logged_not_raised(self, log_structured_mock):
        data_store = DataStore(Path(self.tmp_dir.name) / "missing-dir" / "users.json")
        self.assertFalse(data_store.save_users_async({}).result())
        data_store.close()
        self.assertEqual(log_structured_mock.call_args_list[-1].args[2], "Error saving data")

    @patch("todo_server.log_structured")
    def test_app_state_from_data_store(self, log_structured_mock):
        users = UserDirectory()
        users.register("alice", "password")
        self.data_store.save_users_async(users.serialize()).result()
        snapshots = {
            "alice": _fruits_todo_list().snapshot(),
            "bob": FRUITS_RECORDS,
            "broken": {"todos": [{}]},
            "stringly": [{"title": "t", "id": "0", "tasks": [{"name": "n", "id": "0_0", "status": "false"}]}],
        }
        self.data_store.save_todo_lists_async(snapshots).result()
        state = AppState.from_data_store(self.data_store)
        self.assertTrue(state.users.verify_credentials("alice", "password"))
        self.assertEqual(sorted(state.todo_lists), ["alice", "bob"])
        self.assertEqual(state.todo_list_for("bob").serialize(), FRUITS_RECORDS)


class TestTodoHandler(TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.public_dir = Path(self.tmp_dir.name) / "public"
        self.public_dir.mkdir()
        (self.public_dir / "index.html").write_text("<html><h1>TODO</h1></html>")
        (self.public_dir / "login.html").write_text("<html><h1>Login</h1></html>")
        (Path(self.tmp_dir.name) / "secret.txt").write_text("secret")
        self.public_dir_patcher = patch("todo_server.PUBLIC_DIR", self.public_dir)
        self.public_dir_patcher.start()
        users = UserDirectory()
        users.register("userName", "password")
        self.state = AppState(
            sessions=SessionStore(),
            users=users,
            todo_lists={"testUserName": _fruits_todo_list()},
            data_store=DataStore(),
        )
        self.session_id = self.state.sessions.add_session("testUserName")
        self.cookie = f"{SESSION_COOKIE_NAME}={self.session_id}"
        self.app = TodoHandler(self.state)

    def tearDown(self):
        self.public_dir_patcher.stop()
        self.state.data_store.close()
        self.tmp_dir.cleanup()

    def _request(self, method, path, body=None, cookie=None, form=False):
        if body is None:
            payload = b""
        elif form:
            payload = urlencode(body).encode()
        else:
            payload = json.dumps(body).encode()
        environ = {
            "REQUEST_METHOD": method,
            "PATH_INFO": path,
            "CONTENT_LENGTH": str(len(payload)),
            "CONTENT_TYPE": "application/x-www-form-urlencoded" if form else "application/json",
            "wsgi.input": BytesIO(payload),
        }
        if cookie:
            environ["HTTP_COOKIE"] = cookie
        setup_testing_defaults(environ)
        captured = {}

        def start_response(status, headers):
            captured["status"], captured["headers"] = status, headers

        response_body = b"".join(self.app(environ, start_response))
        headers = dict(captured["headers"])
        self.assertEqual(headers["Content-Length"], str(len(response_body)))
        return int(captured["status"].split(" ")[0]), headers, response_body

    def _todo_list(self):
        return self.state.todo_lists["testUserName"].serialize()

    # pages

    def test_static_file(self):
        status, headers, body = self._request("GET", "/login.html")
        self.assertEqual(status, 200)
        self.assertIn(b"Login", body)
        self.assertEqual(headers["Content-Type"], "text/html; charset=utf-8")

    def test_static_file_outside_public_dir(self):
        status, _, body = self._request("GET", "/../secret.txt")
        self.assertEqual(status, 404)
        self.assertNotIn(b"secret", body.replace(b"secret.txt", b""))

    def test_nul_byte_in_path_is_not_found(self):
        for path in ("/a\x00b", "/login.html\x00"):
            status, _, body = self._request("GET", path)
            self.assertEqual(status, 404)
            self.assertIn(b"Cannot GET", body)

    def test_main_page_redirects_to_login_when_not_logged_in(self):
        for path in ("/", "/index.html"):
            status, headers, body = self._request("GET", path)
            self.assertEqual(status, 302)
            self.assertEqual(headers["Location"], "login.html")
            self.assertEqual(body, b"Found. Redirecting to login.html")

    def test_main_page_when_logged_in(self):
        for path in ("/", "/index.html"):
            status, headers, body = self._request("GET", path, cookie=self.cookie)
            self.assertEqual(status, 200)
            self.assertIn(b"TODO", body)

    def test_unknown_session_cookie_is_unauthenticated(self):
        status, _, _ = self._request("GET", "/index.html", cookie=f"{SESSION_COOKIE_NAME}=unknown")
        self.assertEqual(status, 302)

    # data

    def test_get_todo_list(self):
        status, headers, body = self._request("GET", "/user/todoList", cookie=self.cookie)
        self.assertEqual(status, 200)
        self.assertEqual(body, b'[{"title":"fruits","id":"0","tasks":[{"name":"apple","id":"0_0","status":true}]}]')
        self.assertEqual(headers["Content-Type"], "application/json; charset=utf-8")

    def test_get_todo_list_unauthorized(self):
        status, _, body = self._request("GET", "/user/todoList")
        self.assertEqual((status, body), (401, b""))

    def test_get_user_name(self):
        status, _, body = self._request("GET", "/user/userName", cookie=f"other=1; {self.cookie}")
        self.assertEqual((status, body), (200, b'{"userName":"testUserName"}'))

    def test_get_user_name_unauthorized(self):
        status, _, body = self._request("GET", "/user/userName")
        self.assertEqual((status, body), (401, b""))

    def test_new_user_starts_with_empty_list(self):
        cookie = f"{SESSION_COOKIE_NAME}={self.state.sessions.add_session('userName')}"
        status, _, body = self._request("GET", "/user/todoList", cookie=cookie)
        self.assertEqual((status, body), (200, b"[]"))

    # mutations

    def test_add_todo(self):
        status, _, body = self._request("POST", "/user/addTodo", {"todoTitle": "newTodo"}, self.cookie)
        self.assertEqual(status, 200)
        self.assertEqual(
            body,
            b'[{"title":"newTodo","id":"1","tasks":[]},'
            b'{"title":"fruits","id":"0","tasks":[{"name":"apple","id":"0_0","status":true}]}]',
        )

    def test_add_todo_without_user_prefix(self):
        status, _, body = self._request("POST", "/addTodo", {"todoTitle": "newTodo"}, self.cookie)
        self.assertEqual(status, 200)
        self.assertEqual(json.loads(body)[0]["title"], "newTodo")

    def test_rename_todo(self):
        data = {"todoTitle": "newName", "todoId": "0"}
        status, _, body = self._request("POST", "/user/renameTodo", data, self.cookie)
        self.assertEqual(status, 200)
        self.assertEqual(body, b'[{"title":"newName","id":"0","tasks":[{"name":"apple","id":"0_0","status":true}]}]')

    def test_delete_todo(self):
        status, _, body = self._request("POST", "/user/deleteTodo", {"todoId": "0"}, self.cookie)
        self.assertEqual((status, body), (200, b"[]"))
        status, _, body = self._request("POST", "/user/deleteTodo", {"todoId": "0"}, self.cookie)
        self.assertEqual((status, body), (406, b"Not Acceptable"))

    def test_add_task(self):
        status, _, body = self._request("POST", "/user/addTask", {"taskName": "newTask", "todoId": "0"}, self.cookie)
        self.assertEqual(status, 200)
        self.assertEqual(
            json.loads(body),
            [
                {
                    "title": "fruits",
                    "id": "0",
                    "tasks": [
                        {"name": "apple", "id": "0_0", "status": True},
                        {"name": "newTask", "id": "0_1", "status": False},
                    ],
                }
            ],
        )

    def test_rename_task(self):
        data = {"newName": "mango", "taskId": "0_0", "todoId": "0"}
        status, _, body = self._request("POST", "/user/renameTask", data, self.cookie)
        self.assertEqual(status, 200)
        self.assertEqual(body, b'[{"title":"fruits","id":"0","tasks":[{"name":"mango","id":"0_0","status":true}]}]')

    def test_toggle_task_status(self):
        data = {"taskId": "0_0", "todoId": "0"}
        status, _, body = self._request("POST", "/user/toggleTaskStatus", data, self.cookie)
        self.assertEqual(status, 200)
        self.assertEqual(body, b'[{"title":"fruits","id":"0","tasks":[{"name":"apple","id":"0_0","status":false}]}]')
        self._request("POST", "/user/toggleTaskStatus", data, self.cookie)
        self.assertEqual(self._todo_list(), FRUITS_RECORDS)

    def test_delete_task(self):
        status, _, body = self._request("POST", "/user/deleteTask", {"taskId": "0_0", "todoId": "0"}, self.cookie)
        self.assertEqual((status, body), (200, b'[{"title":"fruits","id":"0","tasks":[]}]'))

    def test_mutations_with_unknown_ids(self):
        requests = [
            ("renameTodo", {"todoId": "invalidId", "todoTitle": "name"}),
            ("deleteTodo", {"todoId": "invalidId"}),
            ("addTask", {"todoId": "invalidId", "taskName": "newTask"}),
            ("renameTask", {"todoId": "invalidId", "taskId": "0_0", "newName": "name"}),
            ("renameTask", {"todoId": "0", "taskId": "invalidId", "newName": "name"}),
            ("toggleTaskStatus", {"todoId": "invalidId", "taskId": "0_0"}),
            ("toggleTaskStatus", {"todoId": "0", "taskId": "invalidId"}),
            ("deleteTask", {"todoId": "invalidId", "taskId": "0_0"}),
            ("deleteTask", {"todoId": "0", "taskId": "invalidId"}),
        ]
        for action, data in requests:
            status, headers, body = self._request("POST", f"/user/{action}", data, self.cookie)
            self.assertEqual((status, body), (406, b"Not Acceptable"), action)
            self.assertEqual(headers["Content-Type"], "text/plain; charset=utf-8")
        self.assertEqual(self._todo_list(), FRUITS_RECORDS)

    def test_mutations_with_missing_fields(self):
        actions = ("addTodo", "renameTodo", "deleteTodo", "addTask", "renameTask", "toggleTaskStatus", "deleteTask")
        for action in actions:
            status, _, body = self._request("POST", f"/user/{action}", {}, self.cookie)
            self.assertEqual((status, body), (400, b""), action)
            status, _, body = self._request("POST", f"/user/{action}", {})
            self.assertEqual((status, body), (400, b""), f"{action} - fields are checked before the session")
        self.assertEqual(self._todo_list(), FRUITS_RECORDS)

    def test_null_field_is_missing(self):
        status, _, _ = self._request("POST", "/user/addTodo", {"todoTitle": None}, self.cookie)
        self.assertEqual(status, 400)

    def test_mutations_unauthorized(self):
        status, _, body = self._request("POST", "/user/addTodo", {"todoTitle": "newTodo"})
        self.assertEqual((status, body), (401, b""))
        self.assertEqual(self._todo_list(), FRUITS_RECORDS)

    @patch("todo_server.MAX_LEN_TASK_NAME", 5)
    def test_too_long_task_name(self):
        status, _, _ = self._request("POST", "/user/addTask", {"taskName": "longTask", "todoId": "0"}, self.cookie)
        self.assertEqual(status, 406)
        self.assertEqual(self._todo_list(), FRUITS_RECORDS)

    def test_form_encoded_mutation(self):
        status, _, body = self._request("POST", "/user/addTask", {"taskName": "pear", "todoId": "0"}, self.cookie, True)
        self.assertEqual(status, 200)
        self.assertEqual(json.loads(body)[0]["tasks"][-1]["name"], "pear")

    def test_invalid_json_body_is_a_bad_request(self):
        environ = {
            "REQUEST_METHOD": "POST",
            "PATH_INFO": "/user/addTodo",
            "CONTENT_LENGTH": "5",
            "CONTENT_TYPE": "application/json",
            "HTTP_COOKIE": self.cookie,
            "wsgi.input": BytesIO(b"{nope"),
        }
        setup_testing_defaults(environ)
        captured = {}
        self.app(environ, lambda status, headers: captured.update(status=status))
        self.assertEqual(captured["status"], "400 Bad Request")

    def test_invalid_content_length_is_a_bad_request(self):
        for content_length in ("abc", "-1", "1.5"):
            environ = {
                "REQUEST_METHOD": "POST",
                "PATH_INFO": "/login",
                "CONTENT_LENGTH": content_length,
                "CONTENT_TYPE": "application/json",
                "wsgi.input": BytesIO(b"{}"),
            }
            setup_testing_defaults(environ)
            captured = {}
            self.app(environ, lambda status, headers: captured.update(status=status))
            self.assertEqual(captured["status"], "400 Bad Request", content_length)

    def test_mutation_triggers_save(self):
        todo_lists_file_path = Path(self.tmp_dir.name) / "todoLists.json"
        self.state.data_store = DataStore(todo_lists_file_path=todo_lists_file_path)
        self._request("POST", "/user/addTodo", {"todoTitle": "newTodo"}, self.cookie)
        self.state.data_store.close()
        saved = json.loads(todo_lists_file_path.read_text())
        self.assertEqual(TodoList.from_snapshot(saved["testUserName"]).serialize()[0]["title"], "newTodo")

    @patch.object(TodoList, "add_todo", side_effect=RuntimeError("boom"))
    @patch("todo_server.log_structured")
    def test_unexpected_error(self, log_structured_mock, add_todo_mock):
        status, _, body = self._request("POST", "/user/addTodo", {"todoTitle": "newTodo"}, self.cookie)
        self.assertEqual((status, body), (500, b"Internal Server Error"))

    # users

    def test_user_name_availability(self):
        status, _, body = self._request("POST", "/userNameAvailability", {"entered": "uniq"})
        self.assertEqual((status, body), (200, b'{"isUniq":true}'))
        status, _, body = self._request("POST", "/userNameAvailability", {"entered": "userName"})
        self.assertEqual((status, body), (200, b'{"isUniq":false}'))

    def test_sign_up(self):
        data = {"userName": "userName2", "password": "password"}
        status, headers, _ = self._request("POST", "/signUp", data, form=True)
        self.assertEqual(status, 302)
        self.assertEqual(headers["Location"], "index.html")
        cookie = headers["Set-Cookie"].split(";")[0]
        self.assertTrue(cookie.startswith(f"{SESSION_COOKIE_NAME}="))
        self.assertIn("Path=/", headers["Set-Cookie"])
        status, _, body = self._request("GET", "/user/userName", cookie=cookie)
        self.assertEqual((status, body), (200, b'{"userName":"userName2"}'))
        self.assertEqual(self.state.todo_lists["userName2"].serialize(), [])

    def test_sign_up_saves_users(self):
        users_file_path = Path(self.tmp_dir.name) / "users.json"
        self.state.data_store = DataStore(users_file_path=users_file_path)
        self._request("POST", "/signUp", {"userName": "userName2", "password": "password"}, form=True)
        self.state.data_store.close()
        self.assertEqual(sorted(json.loads(users_file_path.read_text())), ["userName", "userName2"])

    def test_sign_up_rejections(self):
        for user_name, password in (("userName", "password"), ("as", "password"), ("asas", "pas")):
            data = {"userName": user_name, "password": password}
            status, headers, body = self._request("POST", "/signUp", data, form=True)
            self.assertEqual((status, body), (406, b"Not Acceptable"), user_name)
            self.assertNotIn("Set-Cookie", headers)

    def test_sign_up_missing_fields(self):
        status, _, body = self._request("POST", "/signUp", {"userName": "userName2"}, form=True)
        self.assertEqual((status, body), (400, b""))

    def test_login(self):
        status, headers, body = self._request("POST", "/login", {"userName": "userName", "password": "password"})
        self.assertEqual((status, body), (200, b'{"isSuccessful":true}'))
        session_id = headers["Set-Cookie"].split(";")[0].split("=", 1)[1]
        self.assertEqual(self.state.sessions.get_session_attribute(session_id), "userName")

    def test_login_failures(self):
        for user_name, password in (("userName", "invalid"), ("invalid", "password")):
            status, headers, body = self._request("POST", "/login", {"userName": user_name, "password": password})
            self.assertEqual((status, body), (200, b'{"isSuccessful":false}'))
            self.assertNotIn("Set-Cookie", headers)

    def test_login_missing_fields(self):
        status, _, body = self._request("POST", "/login", {"password": "password"})
        self.assertEqual((status, body), (400, b""))

    def test_logout(self):
        status, headers, body = self._request("POST", "/logout", cookie=self.cookie)
        self.assertEqual((status, body), (200, b""))
        self.assertIn("Max-Age=0", headers["Set-Cookie"])
        self.assertFalse(self.state.sessions.is_valid_sid(self.session_id))
        status, _, _ = self._request("GET", "/user/todoList", cookie=self.cookie)
        self.assertEqual(status, 401)

    def test_logout_without_session(self):
        status, _, _ = self._request("POST", "/logout")
        self.assertEqual(status, 200)

    # general

    def test_unknown_path(self):
        for method in ("GET", "POST", "PUT"):
            status, headers, body = self._request(method, "/invalidPath")
            self.assertEqual(status, 404)
            self.assertIn(f"Cannot {method} /invalidPath".encode(), body)
            self.assertEqual(headers["Content-Type"], "text/html; charset=utf-8")

    def test_method_not_allowed(self):
        status, headers, body = self._request("PUT", "/user/addTodo", {"todoTitle": "newTodo"}, self.cookie)
        self.assertEqual(status, 405)
        self.assertIn(b"Cannot PUT /user/addTodo", body)
        self.assertEqual(headers["Allow"], "POST")
        status, headers, _ = self._request("DELETE", "/")
        self.assertEqual((status, headers["Allow"]), (405, "GET"))

    @patch("todo_server.PATH_PREFIX_PARTS", ["api"])
    def test_path_prefix(self):
        status, _, _ = self._request("GET", "/api/user/todoList", cookie=self.cookie)
        self.assertEqual(status, 200)
        status, _, _ = self._request("GET", "/user/todoList", cookie=self.cookie)
        self.assertEqual(status, 404)
