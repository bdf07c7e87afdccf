"""Authentication session for the BaiduPan web service.

This module implements the login sequence of the BaiduPan website as a small
state machine. The result is a :class:`SessionCredential` whose cookies live in
the session's HTTP client and whose ``bdstoken`` authorizes mutating calls.

Authentication Flow:
1. Visit www.baidu.com to obtain the baseline ``BAIDUID`` cookie
2. Request a login token from the passport API
3. Submit the username, password and token
4. If the service asks for a captcha, fetch the image, ask the solver for the
   answer and submit once more
5. Scrape the ``bdstoken`` from the pan.baidu.com home page
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, Union
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from .errors import (
    CAPTCHA_REQUIRED_CODE,
    AuthError,
    CodedError,
    ConnectivityError,
    FormatError,
)
from .models import LoginAttempt, LoginTokenResult, SessionCredential

if TYPE_CHECKING:
    from typing import Self

logger = logging.getLogger(__name__)

# Baidu endpoints
BAIDU_HOME_URL = "https://www.baidu.com/"
BAIDU_PASSPORT_URL = "https://passport.baidu.com/"
BAIDU_LOGIN_API_URL = BAIDU_PASSPORT_URL + "v2/api/"
BAIDU_PAN_HOME_URL = "https://pan.baidu.com/"

LOGIN_TOKEN_URL = BAIDU_LOGIN_API_URL + "?getapi&tpl=netdisk&apiver=v3"
LOGIN_URL = BAIDU_LOGIN_API_URL + "?login"
LOGOUT_URL = BAIDU_PASSPORT_URL + "?logout"
CAPTCHA_URL = BAIDU_PASSPORT_URL + "cgi-bin/genimage?{code_string}"

CLIENT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/56.0.2924.67 Safari/537.36"
)

# Cookie set by www.baidu.com that the passport API expects
IDENTITY_COOKIE = "BAIDUID"

# 18 means the account is already logged in
LOGIN_SUCCESS_CODES = frozenset({0, 18})

HEX_128_RE = re.compile(r"^[a-z0-9]{32}$")
BDS_TOKEN_RE = re.compile(r'"bdstoken":"([^"]*)"')
LOGIN_ERROR_CODE_RE = re.compile(r"err_no=([0-9]+)")
CODE_STRING_RE = re.compile(r"codeString=([a-zA-Z0-9]+)")

# HTTP client settings
DEFAULT_TIMEOUT = 30.0

CaptchaSolver = Callable[[bytes], Union[str, None, Awaitable[Union[str, None]]]]


class LoginState(str, Enum):
    """States of the login sequence."""

    START = "start"
    BOOTSTRAP_IDENTITY = "bootstrap_identity"
    TOKEN_OBTAINED = "token_obtained"
    CREDENTIALS_SUBMITTED = "credentials_submitted"
    CAPTCHA_REQUIRED = "captcha_required"
    CAPTCHA_FETCHED = "captcha_fetched"
    CAPTCHA_ANSWERED = "captcha_answered"
    CREDENTIALS_RESUBMITTED = "credentials_resubmitted"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


def create_http_client(timeout: float = DEFAULT_TIMEOUT) -> httpx.AsyncClient:
    """Create the HTTP client shared by the session and the storage client."""
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        headers={"User-Agent": CLIENT_USER_AGENT},
    )


def check_response_status(response: httpx.Response, *, allow_partial: bool = False) -> None:
    """Raise ConnectivityError unless the response is 200 (or 206 if allowed).

    Raises:
        ConnectivityError: If the status is not accepted.
    """
    if response.status_code == 200:
        return
    if allow_partial and response.status_code == 206:
        return
    raise ConnectivityError(
        f"Unexpected response from {response.request.url}: "
        f"{response.status_code} {response.reason_phrase}"
    )


async def send_request(
    http_client: httpx.AsyncClient, method: str, url: str, **kwargs: Any
) -> httpx.Response:
    """Send a request and check its status.

    Raises:
        ConnectivityError: On transport errors or unexpected statuses.
    """
    try:
        response = await http_client.request(method, url, **kwargs)
    except httpx.HTTPError as e:
        raise ConnectivityError(f"HTTP error while requesting {url}: {e}") from e
    check_response_status(response)
    return response


def _parse_login_token(text: str) -> LoginTokenResult:
    """Parse the getapi response, which may use single-quoted JSON."""
    try:
        return LoginTokenResult.model_validate_json(text)
    except ValidationError:
        pass
    try:
        return LoginTokenResult.model_validate_json(text.replace("'", '"'))
    except ValidationError as e:
        raise FormatError(f"Could not parse the login token response: {e}") from e


def _extract_login_error_code(text: str) -> int:
    match = LOGIN_ERROR_CODE_RE.search(text)
    if match is None:
        raise FormatError("Login response does not contain an error code")
    return int(match.group(1))


async def _solve_captcha(
    captcha_solver: CaptchaSolver, image: bytes, timeout: float | None
) -> str | None:
    """Run the solver, in a worker thread unless it is a coroutine function."""
    if inspect.iscoroutinefunction(captcha_solver):
        pending = captcha_solver(image)
    else:
        pending = asyncio.to_thread(captcha_solver, image)

    async def solve() -> str | None:
        answer = await pending
        if inspect.isawaitable(answer):
            answer = await answer
        return answer

    return await asyncio.wait_for(solve(), timeout)


class AuthenticationSession:
    """Login session for the BaiduPan web service.

    Runs the login sequence and owns the resulting credential until
    :meth:`teardown` is called.

    Example:
        >>> async with AuthenticationSession() as session:
        ...     credential = await session.establish("user", "password")

    Attributes:
        state: Current state of the login sequence.
        credential: The live credential, if authenticated.
        error_code: Code reported by the service when the last login failed.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the session.

        Args:
            http_client: Client whose cookie jar carries the identity. If None,
                the session creates and owns one.
            timeout: Timeout for the client created when none is given.
        """
        self._owns_http_client = http_client is None
        self.http_client = http_client or create_http_client(timeout)
        self.state = LoginState.START
        self.credential: SessionCredential | None = None
        self.error_code: int | None = None
        self._establishing = False

    @property
    def is_authenticated(self) -> bool:
        """Check if the session holds a live credential."""
        return self.credential is not None

    def _transition(self, state: LoginState) -> None:
        logger.debug("Login state %s -> %s", self.state.value, state.value)
        self.state = state

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await send_request(self.http_client, method, url, **kwargs)

    async def establish(
        self,
        username: str,
        password: str,
        captcha_solver: CaptchaSolver | None = None,
        *,
        captcha_timeout: float | None = None,
    ) -> SessionCredential:
        """Log in and return the session credential.

        Args:
            username: The account name.
            password: The account password.
            captcha_solver: Called with the captcha image bytes when the service
                asks for one; returns the text in the image, or None to give up.
                May be a coroutine function.
            captcha_timeout: Seconds to wait for the solver. None waits forever.

        Returns:
            The credential of the new session.

        Raises:
            AuthError: If the service rejects the login.
            FormatError: If a response does not have the expected shape.
            ConnectivityError: On transport errors or unexpected statuses.
            TimeoutError: If the captcha solver exceeds captcha_timeout.
            RuntimeError: If the session is already established or establishing.
        """
        if self._establishing:
            raise RuntimeError("establish() is already running on this session")
        if self.credential is not None:
            raise RuntimeError("Session is already authenticated; call teardown() first")

        self._establishing = True
        self.error_code = None
        attempt = LoginAttempt(username=username, password=password)

        try:
            await self._bootstrap_identity()
            attempt.token = await self._get_login_token()
            self._transition(LoginState.TOKEN_OBTAINED)
            await self._login(attempt, captcha_solver, captcha_timeout)
            bds_token = await self._get_bds_token()
            credential = SessionCredential(
                username=username,
                cookies=self._snapshot_cookies(),
                bds_token=bds_token,
            )
        except Exception as e:
            if isinstance(e, CodedError):
                self.error_code = e.code
            self._transition(LoginState.FAILED)
            logger.info("Login failed for %s: %s", username, e)
            raise
        finally:
            self._establishing = False

        self.credential = credential
        self._transition(LoginState.AUTHENTICATED)
        logger.info("Logged in as %s", username)
        return credential

    async def _bootstrap_identity(self) -> None:
        self._transition(LoginState.BOOTSTRAP_IDENTITY)
        await self._request("GET", BAIDU_HOME_URL)
        if self.http_client.cookies.get(IDENTITY_COOKIE) is None:
            raise ConnectivityError(f'Could not find the cookie named "{IDENTITY_COOKIE}"')

    async def _get_login_token(self) -> str:
        response = await self._request("GET", LOGIN_TOKEN_URL)
        result = _parse_login_token(response.text)

        if result.err_info.no != 0:
            raise AuthError(result.err_info.no)

        token = result.data.token
        if not HEX_128_RE.match(token):
            raise FormatError(f"Malformed login token: {token!r}")
        return token

    async def _submit_credentials(self, attempt: LoginAttempt) -> str:
        form = {
            "tpl": "netdisk",
            "apiver": "v3",
            "username": attempt.username,
            "password": attempt.password,
            "token": attempt.token,
        }
        if attempt.code_string is not None:
            form["codestring"] = attempt.code_string
        if attempt.captcha is not None:
            form["verifycode"] = attempt.captcha

        response = await self._request("POST", LOGIN_URL, data=form)
        attempt.error_code = _extract_login_error_code(response.text)
        return response.text

    async def _login(
        self,
        attempt: LoginAttempt,
        captcha_solver: CaptchaSolver | None,
        captcha_timeout: float | None,
    ) -> None:
        text = await self._submit_credentials(attempt)
        self._transition(LoginState.CREDENTIALS_SUBMITTED)

        if attempt.error_code == CAPTCHA_REQUIRED_CODE and captcha_solver is not None:
            self._transition(LoginState.CAPTCHA_REQUIRED)
            match = CODE_STRING_RE.search(text)
            if match is None:
                raise FormatError("Captcha requested but no code string was found")
            attempt.code_string = match.group(1)

            image = await self._get_captcha(attempt.code_string)
            self._transition(LoginState.CAPTCHA_FETCHED)

            answer = await _solve_captcha(captcha_solver, image, captcha_timeout)
            if not answer:
                raise AuthError(CAPTCHA_REQUIRED_CODE)
            attempt.captcha = answer
            self._transition(LoginState.CAPTCHA_ANSWERED)

            await self._submit_credentials(attempt)
            self._transition(LoginState.CREDENTIALS_RESUBMITTED)

        if attempt.error_code not in LOGIN_SUCCESS_CODES:
            raise AuthError(attempt.error_code)

    async def _get_captcha(self, code_string: str) -> bytes:
        url = CAPTCHA_URL.format(code_string=quote(code_string, safe=""))
        response = await self._request("GET", url)
        return response.content

    async def _get_bds_token(self) -> str:
        response = await self._request("GET", BAIDU_PAN_HOME_URL)
        match = BDS_TOKEN_RE.search(response.text)
        if match is None:
            raise FormatError("Could not find the bdstoken on the home page")

        bds_token = match.group(1)
        if not HEX_128_RE.match(bds_token):
            raise FormatError(f"Malformed bdstoken: {bds_token!r}")
        return bds_token

    def _snapshot_cookies(self) -> dict[str, str]:
        return {cookie.name: cookie.value or "" for cookie in self.http_client.cookies.jar}

    async def teardown(self) -> None:
        """Log out and drop the credential.

        Safe to call more than once; calls after the first are no-ops.

        Raises:
            ConnectivityError: If the logout request fails.
        """
        if self.credential is None:
            return

        username = self.credential.username
        self.credential = None
        self.state = LoginState.START
        try:
            await self._request("GET", LOGOUT_URL)
        finally:
            self.http_client.cookies.clear()
        logger.info("Logged out %s", username)

    async def aclose(self) -> None:
        """Log out and close the HTTP client if the session owns it."""
        try:
            await self.teardown()
        finally:
            if self._owns_http_client:
                await self.http_client.aclose()

    async def __aenter__(self) -> Self:
        """Async context manager entry."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit - log out and release the client."""
        await self.aclose()
