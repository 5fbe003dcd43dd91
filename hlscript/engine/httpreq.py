"""HTTP requests for the 'http' command.

Requests are described by a list of KEY=VALUE arguments (keys are
case-insensitive) and bare method names:

    http GET URL=https://example.com/api H='Accept: application/json'
    http client new api URL=https://example.com R='3 500ms 502 503'
    http api POST D=@payload.json

Named clients are request templates that live for the duration of a
script. Using a client clones its template first, so per-call arguments
never leak back into the stored client.
"""

import asyncio
import copy
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

import httpx

from hlscript.engine.errors import HTTPArgumentError

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "POST", "HEAD", "PUT", "DELETE", "PATCH", "OPTIONS")

# Transport errors raised when a server closes an idle HTTP/2 connection.
# The request was never processed, so these are not reported as failures.
# TODO: revisit once idle-connection handling can be configured per client;
# this only papers over one protocol-level race.
# A GOAWAY with any error code other than NO_ERROR is still reported.
IDLE_CLOSE_PATTERN = re.compile(
    r"server sent GOAWAY and closed the connection"
    r"|ConnectionTerminated error_code:(?:ErrorCodes\.)?(?:NO_ERROR|0)\b"
)

DEFAULT_TIMEOUT = 30.0

BODY_CONTENT_TYPES = {
    "json": "application/json",
    "form": "application/x-www-form-urlencoded",
    "text": "text/plain; charset=utf-8",
}

_DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)')
_DURATION_UNITS = {
    "ns": 1e-9, "us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0,
}

ReadFile = Callable[[str], str]


@dataclass
class RetryPolicy:
    """When and how often to repeat a request.

    Attributes:
        count: Extra attempts allowed after the first one
        delay: Seconds to sleep between attempts
        codes: Response status codes that trigger a retry
    """
    count: int = 0
    delay: float = 0.0
    codes: FrozenSet[int] = frozenset()


@dataclass
class UploadFile:
    """A file attached as multipart form data."""
    filename: str
    fieldname: str
    content: str


@dataclass
class HTTPRequestTemplate:
    """A mutable description of an HTTP request.

    Stored templates back named clients; one-off requests build a fresh one.
    """
    method: str = "GET"
    url: str = ""
    headers: List[Tuple[str, str]] = field(default_factory=list)
    query: List[str] = field(default_factory=list)
    body: Optional[str] = None
    body_type: Optional[str] = None
    files: List[UploadFile] = field(default_factory=list)
    auth: Optional[Tuple[str, str]] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def clone(self) -> "HTTPRequestTemplate":
        return copy.deepcopy(self)


@dataclass
class HTTPResult:
    """Classified outcome of an HTTP request.

    Attributes:
        stdout: Response body on success
        stderr: Response body on failure
        status: Response status code (0 if no response was received)
        error: Failure description, or None on success
    """
    stdout: str
    stderr: str
    status: int
    error: Optional[str] = None


def parse_duration(text: str) -> float:
    """Parse a duration such as "500ms", "2s" or "1m30s" into seconds.

    Raises:
        ValueError: If text is not a valid duration
    """
    s = text.strip()
    if s in ("0", "+0", "-0"):
        return 0.0
    sign = 1.0
    if s[:1] in ("+", "-"):
        sign = -1.0 if s[0] == "-" else 1.0
        s = s[1:]
    if not s:
        raise ValueError(f"invalid duration {text!r}")
    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(s):
        if match.start() != pos:
            raise ValueError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(s):
        raise ValueError(f"invalid duration {text!r}")
    return sign * total


def parse_retry(value: str) -> RetryPolicy:
    """Parse a retry spec: "<count> <duration> <codes...>".

    Raises:
        HTTPArgumentError: If the spec is malformed
    """
    fields = value.split()
    if len(fields) < 3:
        raise HTTPArgumentError("http retry usage: RETRY='<count> <timer> [codes...]'")
    count, timer, codes = fields[0], fields[1], fields[2:]
    try:
        n = int(count)
        delay = parse_duration(timer)
        status_codes = frozenset(int(code) for code in codes)
    except ValueError as e:
        raise HTTPArgumentError(f"bad http retry spec {value!r}: {e}") from e
    if n < 0:
        raise HTTPArgumentError(f"bad http retry count {n}")
    return RetryPolicy(count=n, delay=delay, codes=status_codes)


def _split_pair(value: str, what: str) -> Tuple[str, str]:
    key, sep, rest = value.partition(":")
    if not sep:
        raise HTTPArgumentError(f"http {what} must look like 'name:value', got {value!r}")
    return key.strip(), rest.strip()


def apply_arg(template: HTTPRequestTemplate, arg: str, read_file: ReadFile) -> None:
    """Apply one KEY=VALUE (or bare) argument to template in place.

    Args:
        template: Request template to modify
        arg: The argument, e.g. "URL=http://x", "POST" or "H=Accept:text/plain"
        read_file: Reads '@file' references (relative to the script's cwd)

    Raises:
        HTTPArgumentError: If the key is unknown or its value is malformed
    """
    key, _, val = arg.partition("=")
    k = key.upper()

    if k in ("U", "URL"):
        template.url = val
    elif k in ("T", "TYPE"):
        body_type = val.lower()
        if body_type not in BODY_CONTENT_TYPES:
            raise HTTPArgumentError(
                f"unknown http body type {val!r} (want one of {', '.join(BODY_CONTENT_TYPES)})"
            )
        template.body_type = body_type
    elif k in ("Q", "QUERY"):
        if val.startswith("@"):
            val = read_file(val[1:])
        template.query.append(val.strip())
    elif k in ("R", "RETRY"):
        template.retry = parse_retry(val)
    elif k in ("D", "DATA", "S", "SEND"):
        if val.startswith("@"):
            val = read_file(val[1:])
        template.body = val
    elif k in ("F", "FILE"):
        filename, _, fieldname = val.partition(":")
        filename = filename.strip()
        template.files.append(UploadFile(
            filename=filename,
            fieldname=fieldname.strip() or "file",
            content=read_file(filename),
        ))
    elif k in ("A", "AUTH"):
        template.auth = _split_pair(val, "auth")
    elif k in ("H", "HEADER"):
        template.headers.append(_split_pair(val, "header"))
    elif k in ("M", "METHOD"):
        method = val.upper()
        if method not in HTTP_METHODS:
            raise HTTPArgumentError(f"unknown http method {val!r}")
        template.method = method
    elif k in HTTP_METHODS:
        template.method = k
    elif key.startswith("http"):
        # A bare URL.
        template.url = arg
    else:
        raise HTTPArgumentError(f"unknown http arg/key: {arg!r} / {key!r}")


def apply_args(template: HTTPRequestTemplate, args: List[str], read_file: ReadFile) -> HTTPRequestTemplate:
    for arg in args:
        apply_arg(template, arg, read_file)
    return template


class HTTPClientRegistry:
    """Named request templates owned by one script.

    'default' is used when 'http client <op>' is given no name.
    """

    def __init__(self) -> None:
        self._clients: Dict[str, HTTPRequestTemplate] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._clients

    def get(self, name: str) -> HTTPRequestTemplate:
        """Return the stored template (not a copy)."""
        return self._clients[name]

    def names(self) -> List[str]:
        return sorted(self._clients)

    def manage(self, args: List[str], read_file: ReadFile) -> None:
        """Handle 'http client <new|mod|del> [name] args...'.

        Raises:
            HTTPArgumentError: On bad usage, bad arguments, or an unknown client
        """
        if not args:
            raise HTTPArgumentError("usage: http client [new,mod,del] <name> http-args...")

        op, name = args[0], "default"
        if len(args) == 1:
            rest: List[str] = []
        else:
            name, rest = args[1], args[2:]

        if op == "new":
            self._clients[name] = apply_args(HTTPRequestTemplate(), rest, read_file)
        elif op == "mod":
            if name not in self._clients:
                raise HTTPArgumentError(f"unknown http client {name!r}")
            # Apply to a copy so a bad argument leaves the client untouched.
            self._clients[name] = apply_args(self._clients[name].clone(), rest, read_file)
        elif op == "del":
            if name not in self._clients:
                raise HTTPArgumentError(f"unknown http client {name!r}")
            del self._clients[name]
        else:
            raise HTTPArgumentError("usage: http client <new|mod|del> args...")

    def request_from_args(self, args: List[str], read_file: ReadFile) -> HTTPRequestTemplate:
        """Build the request for an 'http' line.

        If the first argument names a client, its template is cloned and
        the remaining arguments are applied to the clone.
        """
        if args and args[0] in self._clients:
            return apply_args(self._clients[args[0]].clone(), args[1:], read_file)
        return apply_args(HTTPRequestTemplate(), args, read_file)


def _query_params(template: HTTPRequestTemplate) -> List[Tuple[str, str]]:
    params: List[Tuple[str, str]] = []
    for q in template.query:
        if q.startswith("{"):
            try:
                decoded = json.loads(q)
            except json.JSONDecodeError:
                decoded = None
            if isinstance(decoded, dict):
                params.extend((str(k), str(v)) for k, v in decoded.items())
                continue
        params.extend(httpx.QueryParams(q.lstrip("?")).multi_items())
    return params


def _request_kwargs(template: HTTPRequestTemplate) -> Dict:
    """Translate a template into keyword arguments for httpx."""
    headers = list(template.headers)
    has_content_type = any(name.lower() == "content-type" for name, _ in headers)
    kwargs: Dict = {}

    params = _query_params(template)
    if params:
        kwargs["params"] = params

    if template.files:
        kwargs["files"] = [
            (f.fieldname, (os.path.basename(f.filename), f.content.encode("utf-8")))
            for f in template.files
        ]
        if template.body:
            kwargs["data"] = dict(httpx.QueryParams(template.body).multi_items())
    elif template.body is not None:
        kwargs["content"] = template.body.encode("utf-8")
        if not has_content_type:
            body_type = template.body_type
            if body_type is None:
                try:
                    json.loads(template.body)
                    body_type = "json"
                except json.JSONDecodeError:
                    body_type = "text"
            headers.append(("Content-Type", BODY_CONTENT_TYPES[body_type]))

    if headers:
        kwargs["headers"] = headers
    if template.auth is not None:
        kwargs["auth"] = httpx.BasicAuth(*template.auth)
    return kwargs


async def send_request(
    template: HTTPRequestTemplate,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> httpx.Response:
    """Send the request described by template, honoring its retry policy.

    Raises:
        HTTPArgumentError: If the template has no URL
        httpx.RequestError: On connection-level failures and redirect loops
        httpx.InvalidURL: If the URL cannot be parsed
    """
    if not template.url:
        raise HTTPArgumentError("http request has no URL")

    kwargs = _request_kwargs(template)
    retry = template.retry

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=transport) as client:
        attempt = 0
        while True:
            response = await client.request(template.method, template.url, **kwargs)
            if response.status_code in retry.codes and attempt < retry.count:
                attempt += 1
                logger.debug(
                    f"HTTP {response.status_code} from {template.url}, retry {attempt}/{retry.count}",
                    extra={"url": template.url, "status": response.status_code, "attempt": attempt}
                )
                await asyncio.sleep(retry.delay)
                continue
            return response


def is_idle_close(error: BaseException) -> bool:
    """Report whether error is the benign idle-connection-closed signal."""
    return IDLE_CLOSE_PATTERN.search(str(error)) is not None


def classify_response(
    response: Optional[httpx.Response],
    error: Optional[BaseException] = None,
) -> HTTPResult:
    """Turn a response (or transport error) into an HTTPResult.

    Transport errors and 5xx are internal errors, 4xx is a bad request,
    anything else succeeds with the body as stdout. Bodies get a trailing
    newline so they compare naturally against archive files.
    """
    if error is not None:
        if is_idle_close(error):
            logger.warning(f"Ignoring idle connection close: {error}")
            return HTTPResult(stdout="", stderr="", status=0)
        return HTTPResult(stdout="", stderr="", status=0, error=f"Internal Error:\n{error}\n")

    assert response is not None
    body = response.text + "\n"
    status = response.status_code
    if status >= 500:
        return HTTPResult(stdout="", stderr=body, status=status,
                          error=f"Internal Error:\nHTTP {status}\n{body}")
    if status >= 400:
        return HTTPResult(stdout="", stderr=body, status=status,
                          error=f"Bad Request:\nHTTP {status}\n{body}")
    return HTTPResult(stdout=body, stderr="", status=status)


async def perform(
    template: HTTPRequestTemplate,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> HTTPResult:
    """Send template and classify the outcome."""
    try:
        response = await send_request(template, transport=transport)
    except (httpx.RequestError, httpx.InvalidURL) as e:
        return classify_response(None, e)
    return classify_response(response)
