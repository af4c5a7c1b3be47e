# WalletSync - wallet synchronization backend
# Copyright (C) 2019-2020 The ElectrumSV Developers
# Copyright (C) 2024 The WalletSync Developers
#
# Permission is hereby granted, free of charge, to any person
# obtaining a copy of this software and associated documentation files
# (the "Software"), to deal in the Software without restriction,
# including without limitation the rights to use, copy, modify, merge,
# publish, distribute, sublicense, and/or sell copies of the Software,
# and to permit persons to whom the Software is furnished to do so,
# subject to the following conditions:
#
# The above copyright notice and this permission notice shall be
# included in all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND,
# EXPRESS OR IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF
# MERCHANTABILITY, FITNESS FOR A PARTICULAR PURPOSE AND
# NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT HOLDERS
# BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN
# ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
# CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

import json
from typing import Any, Dict, List, Optional, Union

from aiohttp import web

from .api import Handlers
from .exceptions import (AccountNotReady, UnknownAccountError, UnknownCoinError,
    WalletSyncError)
from .logs import logs


class Errors:
    # http 400 bad requests
    GENERIC_BAD_REQUEST_CODE = 40000
    ACCOUNT_NOT_READY_CODE = 40001
    SYNC_ERROR_CODE = 40002
    BAD_REQUEST_BODY_CODE = 40003

    # http 404 not found
    UNKNOWN_ACCOUNT_CODE = 40401
    UNKNOWN_COIN_CODE = 40402

    # http 500 internal server error
    GENERIC_INTERNAL_SERVER_ERROR = 50000


class Fault(Exception):
    """Restapi error class"""

    def __init__(self, code=Errors.GENERIC_BAD_REQUEST_CODE, message='Server error', kind=None):
        self.code = code
        self.message = message
        self.kind = kind

    def __repr__(self):
        return "Fault(%s, '%s')" % (self.code, self.message)


def _error_object(code: int, message: str, kind: Optional[str]) -> Dict[str, Any]:
    response_obj: Dict[str, Any] = {'code': code,
                                    'message': message}
    if kind is not None:
        response_obj['kind'] = kind
    return response_obj


def bad_request(code: int, message: str, kind: Optional[str]=None) -> web.Response:
    response_obj = _error_object(code, message, kind)
    return web.json_response(data=response_obj, status=400)


def not_found(code: int, message: str, kind: Optional[str]=None) -> web.Response:
    response_obj = _error_object(code, message, kind)
    return web.json_response(data=response_obj, status=404)


def internal_server_error(code: int, message: str, kind: Optional[str]=None) -> web.Response:
    response_obj = _error_object(code, message, kind)
    return web.json_response(data=response_obj, status=500)


def good_response(response: Union[Dict, List, None]) -> web.Response:
    return web.Response(text=json.dumps(response, indent=2), content_type="application/json")


async def decode_request_body(request: web.Request) -> Any:
    body = await request.read()
    if body == b"":
        return {}
    try:
        return json.loads(body.decode('utf-8'))
    except (UnicodeDecodeError, ValueError):
        raise Fault(Errors.BAD_REQUEST_BODY_CODE, 'request body is not valid JSON') from None


def fault_to_http_response(fault: Fault):
    if 40000 <= fault.code < 50000:
        if 40400 <= fault.code < 40500:
            return not_found(fault.code, fault.message, fault.kind)
        return bad_request(fault.code, fault.message, fault.kind)

    if 50000 <= fault.code < 60000:
        return internal_server_error(fault.code, fault.message, fault.kind)

    return bad_request(fault.code, fault.message, fault.kind)


def error_to_fault(error: WalletSyncError) -> Fault:
    if isinstance(error, UnknownAccountError):
        return Fault(Errors.UNKNOWN_ACCOUNT_CODE, str(error), error.kind)
    if isinstance(error, UnknownCoinError):
        return Fault(Errors.UNKNOWN_COIN_CODE, str(error), error.kind)
    if isinstance(error, AccountNotReady):
        return Fault(Errors.ACCOUNT_NOT_READY_CODE, str(error), error.kind)
    return Fault(Errors.SYNC_ERROR_CODE, str(error), error.kind)


class RestAPI:
    '''The routes of the UI facing API.'''

    def __init__(self, handlers: Handlers) -> None:
        self.handlers = handlers
        self.logger = logs.get_logger("rest-api")

    def add_routes(self, app: web.Application) -> None:
        app.add_routes([
            web.get("/coins/{coin}/headers/status", self.get_headers_status),
            web.get("/coins/convert-to-fiat", self.get_convert_to_fiat),
            web.get("/coins/convert-from-fiat", self.get_convert_from_fiat),
            web.get("/accounts", self.get_accounts),
            web.post("/accounts/reinitialize", self.post_accounts_reinitialize),
            web.get("/account/{code}/balance", self.get_balance),
            web.get("/account/{code}/transactions", self.get_transactions),
            web.get("/account-summary", self.get_account_summary),
            web.post("/certs/download", self.post_certs_download),
            web.post("/electrum/check", self.post_electrum_check),
        ])

    @web.middleware
    async def handle_errors(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except Fault as fault:
            return fault_to_http_response(fault)
        except WalletSyncError as error:
            self.logger.debug('%s failed: %s', request.path, error)
            return fault_to_http_response(error_to_fault(error))

    async def get_headers_status(self, request: web.Request) -> web.Response:
        return good_response(self.handlers.get_headers_status(request.match_info['coin']))

    async def get_accounts(self, request: web.Request) -> web.Response:
        return good_response(self.handlers.get_accounts())

    async def post_accounts_reinitialize(self, request: web.Request) -> web.Response:
        await self.handlers.reinitialize_accounts()
        return good_response(None)

    async def get_balance(self, request: web.Request) -> web.Response:
        return good_response(self.handlers.get_balance(request.match_info['code']))

    async def get_transactions(self, request: web.Request) -> web.Response:
        return good_response(self.handlers.get_transactions(request.match_info['code']))

    async def get_account_summary(self, request: web.Request) -> web.Response:
        return good_response(self.handlers.get_account_summary())

    async def get_convert_to_fiat(self, request: web.Request) -> web.Response:
        query = request.query
        return good_response(self.handlers.convert_to_fiat(query.get('from', ''),
            query.get('to', ''), query.get('amount', '')))

    async def get_convert_from_fiat(self, request: web.Request) -> web.Response:
        query = request.query
        return good_response(self.handlers.convert_from_fiat(query.get('from', ''),
            query.get('to', ''), query.get('amount', '')))

    async def post_certs_download(self, request: web.Request) -> web.Response:
        server_address = await decode_request_body(request)
        if not isinstance(server_address, str):
            raise Fault(Errors.BAD_REQUEST_BODY_CODE, 'expected a server address string')
        return good_response(await self.handlers.download_certificate(server_address))

    async def post_electrum_check(self, request: web.Request) -> web.Response:
        server_info = await decode_request_body(request)
        if not isinstance(server_info, dict):
            raise Fault(Errors.BAD_REQUEST_BODY_CODE, 'expected a server info object')
        return good_response(await self.handlers.check_server(server_info))


def create_app(handlers: Handlers) -> web.Application:
    rest_api = RestAPI(handlers)
    app = web.Application(middlewares=[
        web.normalize_path_middleware(append_slash=False, remove_slash=True),
        rest_api.handle_errors,
    ])
    rest_api.add_routes(app)
    return app


class AiohttpServer:

    def __init__(self, handlers: Handlers, host: str = "localhost", port: int = 9999):
        self.runner = None
        self.app = create_app(handlers)
        self.app.on_startup.append(self.on_startup)
        self.app.on_shutdown.append(self.on_shutdown)
        self.host = host
        self.port = port
        self.logger = logs.get_logger("aiohttp-rest-api")

    async def on_startup(self, app):
        self.logger.debug("starting...")

    async def on_shutdown(self, app):
        self.logger.debug("stopped.")

    async def start(self):
        self.runner = web.AppRunner(self.app, access_log=None)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port, reuse_address=True)
        await site.start()

    async def stop(self):
        await self.runner.cleanup()
