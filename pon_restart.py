#!/usr/bin/env python3
# Script to restart PON/ONT home gateways through their web admin interface
# Supports gateways exposing the /web/cmcc/gch/ management pages
import re
import sys
import time
import argparse
import logging
from urllib.parse import urlencode

import requests
import urllib3

from log_setup import setup_logging, add_logging_arguments
from pon_config import ConfigError, add_config_argument, load_config

logger = logging.getLogger(__name__)

LOGIN_TOKEN_RE = re.compile(r'getObj\("Frm_Logintoken"\)\.value = "(.*)";')
SESSION_TOKEN_RE = re.compile(r'var session_token = "(.*)";')

SESSION_PAGE = '/web/cmcc/gch/template_user.gch'
RESTART_PAGE = '/web/cmcc/gch/getpage.gch'
RESTART_NEXT_PAGE = 'web/cmcc/gch/iot_advance_setting_t.gch'

# Seconds
REQUEST_TIMEOUT = 10
RESTART_COMMAND_TIMEOUT = 1


class RestartError(Exception):
    """Raised when the gateway could not be driven up to the restart command."""


class DeviceRestarter:
    """
    Client for the gateway's web administration flow.

    A restart is a fixed sequence over one HTTP session: fetch the login
    page token, post the credentials, fetch the session token, then post
    the restart command. Only the last step may fail silently, because the
    gateway drops the connection as soon as it starts rebooting.
    """

    def __init__(self, ip: str, username: str, password: str, port: int = None,
                 protocol: str = 'http', verify: bool = True):
        """
        Initialize the gateway client.

        Args:
            ip: Gateway hostname or IP address
            username: Admin username
            password: Admin password
            port: TCP port (default: 80 for http, 443 for https)
            protocol: 'http' or 'https'
            verify: Verify TLS certificates when using https
        """
        self.ip = ip
        self.username = username
        self.password = password
        self.protocol = protocol
        self.port = port or (443 if protocol == 'https' else 80)

        self.s = requests.Session()
        self.s.verify = verify
        if not verify:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            logger.debug("SSL certificate verification disabled")

        logger.debug(f"DeviceRestarter initialized for {self.base_url} as {username}")

    @property
    def base_url(self) -> str:
        return f'{self.protocol}://{self.ip}:{self.port}'

    def _get_page(self, path: str, what: str) -> str:
        url = self.base_url + path
        start_time = time.time()
        try:
            r = self.s.get(url, timeout=REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as e:
            duration = time.time() - start_time
            raise RestartError(f"Get {what} failed after {duration:.2f}s: {e}") from e
        duration = time.time() - start_time

        logger.debug(f"Fetched {url} in {duration:.2f}s (status: {r.status_code})",
                    extra={'extra_data': {
                        'url': url,
                        'duration': duration,
                        'status_code': r.status_code,
                        'response_length': len(r.text)
                    }})
        if not r.text:
            raise RestartError(f"Get {what} failed: empty response.")
        return r.text

    def get_login_token(self) -> str:
        """
        Fetch the login page and extract its anti-forgery token.

        Returns:
            The Frm_Logintoken value embedded in the page
        """
        html = self._get_page('/', 'Frm_Logintoken')
        match = LOGIN_TOKEN_RE.search(html)
        if not match:
            raise RestartError("Get Frm_Logintoken failed: token not found in login page.")
        return match.group(1)

    def post_login(self, login_token: str):
        """
        Submit credentials. The gateway answers with the same page either
        way; success only shows up in the session token fetched afterwards.
        """
        data = {
            'frashnum': '',
            'action': 'login',
            'Frm_Logintoken': login_token,
            'username': self.username,
            'logincode': self.password,
            'textpwd': '',
            'ieversion': '1',
        }
        logger.debug(f"Submitting login credentials for {self.username}")
        start_time = time.time()
        try:
            r = self.s.post(self.base_url + '/', data=data, timeout=REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as e:
            duration = time.time() - start_time
            raise RestartError(f"Login failed after {duration:.2f}s: {e}") from e
        duration = time.time() - start_time
        logger.debug(f"Login POST completed in {duration:.2f}s (status: {r.status_code})",
                    extra={'extra_data': {
                        'duration': duration,
                        'status_code': r.status_code
                    }})

    def get_session_token(self) -> str:
        """
        Fetch the user template page and extract the session token.

        Returns:
            The session_token value used to authorize the restart command
        """
        html = self._get_page(SESSION_PAGE, 'session_token')
        match = SESSION_TOKEN_RE.search(html)
        if not match:
            raise RestartError("Get session_token failed: token not found, login was probably rejected.")
        return match.group(1)

    def login(self) -> str:
        """
        Run the login part of the sequence.

        Returns:
            Session token of the authenticated session
        """
        logger.info(f"Logging in to {self.base_url} as {self.username}...")
        login_start = time.time()

        login_token = self.get_login_token()
        self.post_login(login_token)
        session_token = self.get_session_token()

        login_duration = time.time() - login_start
        logger.info(f"Login completed in {login_duration:.2f}s",
                   extra={'extra_data': {
                       'host': self.ip,
                       'username': self.username,
                       'login_duration': login_duration
                   }})
        return session_token

    def post_restart(self, session_token: str):
        """
        Send the restart command. Fire-and-forget: a timeout or dropped
        connection here means the gateway is already going down.
        """
        query = urlencode({'pid': 1002, 'nextpage': RESTART_NEXT_PAGE})
        url = f'{self.base_url}{RESTART_PAGE}?{query}'
        data = {
            'IF_ACTION': 'devrestart',
            'IF_ERRORSTR': 'SUCC',
            'IF_ERRORPARAM': 'SUCC',
            'IF_ERRORTYPE': '-1311313888',
            'flag': '1',
            '_SESSION_TOKEN_USER': session_token,
        }
        logger.info("Sending restart command to gateway")
        try:
            r = self.s.post(url, data=data, timeout=RESTART_COMMAND_TIMEOUT)
            logger.debug(f"Restart command answered (status: {r.status_code})")
        except requests.exceptions.RequestException as e:
            logger.debug(f"Restart command connection ended: {type(e).__name__}",
                        extra={'extra_data': {
                            'error': str(e),
                            'error_type': type(e).__name__,
                            'restart_command_sent': True
                        }})

    def restart(self):
        """
        Perform the complete login-to-restart sequence.

        Raises:
            RestartError: if any step before the restart command fails
        """
        restart_start = time.time()
        session_token = self.login()
        self.post_restart(session_token)
        duration = time.time() - restart_start
        logger.info(f"Restart command sent in {duration:.2f}s",
                   extra={'extra_data': {
                       'host': self.ip,
                       'duration': duration,
                       'restart_command_sent': True
                   }})


def get_arguments(argv=None):
    """
    Parse command line arguments.

    Returns:
        Parsed argument namespace
    """
    parser = argparse.ArgumentParser(
        description="Restart a PON gateway once via its web admin interface"
    )
    parser.add_argument(
        '--dryrun',
        '-d',
        action='store_true',
        help="Logs in but doesn't restart"
    )
    add_config_argument(parser)
    add_logging_arguments(parser)
    return parser.parse_args(argv)


def main(argv=None):
    args = get_arguments(argv)

    setup_logging(
        log_level=args.log_level,
        log_file=args.log_file,
        log_max_size=args.log_max_size,
        log_backup_count=args.log_backup_count
    )

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    restarter = DeviceRestarter(
        config.ip,
        config.username,
        config.password,
        port=config.port,
        protocol=config.protocol,
        verify=not config.noverify
    )

    try:
        if args.dryrun:
            restarter.login()
            logger.info("Dry-run mode: login verified, skipping restart command.")
        else:
            restarter.restart()
    except RestartError as e:
        logger.error(f"Restart failed: {e}", exc_info=True)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
