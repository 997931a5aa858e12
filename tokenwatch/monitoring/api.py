"""
HTTP and Socket.IO surface for TokenWatch

REST:
    GET  /health
    GET  /api/v2/tokens/{token}?wallet=...
    POST /api/v2/tokens/batch   {"tokens": [...], "wallet": "..."}

Socket.IO:
    client -> server  subscribe / unsubscribe  {"tokenMint": "..."}
    server -> client  token_update             {"tokenMint": "...", "data": {...}}
"""

import logging
from typing import Any, Dict, Optional

import aiohttp_cors
import orjson
import socketio
from aiohttp import web

from tokenwatch.config.config_manager import RealtimeConfig
from tokenwatch.core.event_bus import EventBus, EventType
from tokenwatch.core.orchestrator import AggregationOrchestrator
from tokenwatch.monitoring.distributor import RealtimeDistributor
from tokenwatch.utils.errors import MalformedInputError, SerializationError
from tokenwatch.utils.helpers import validate_token_id

logger = logging.getLogger(__name__)


def json_error(error: str, status: int, message: Optional[str] = None,
               **extra) -> web.Response:
    body: Dict[str, Any] = {'error': error}
    if message:
        body['message'] = message
    body.update(extra)
    return web.json_response(body, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Map the error taxonomy onto HTTP status codes"""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except MalformedInputError as e:
        return json_error('malformed_input', 400, e.message, field=e.details.get('field'))
    except SerializationError as e:
        logger.error(f"Serialization failed on {request.path}: {e}")
        return json_error('serialization_failed', 500, e.message)
    except Exception as e:
        logger.error(f"Unhandled error on {request.path}: {e}", exc_info=True)
        return json_error('internal_error', 500)


def _extract_token(data: Any) -> str:
    token = data.get('tokenMint') if isinstance(data, dict) else data
    return validate_token_id(token)


class TokenWatchServer:
    """aiohttp application with an attached Socket.IO server"""

    def __init__(self, orchestrator: AggregationOrchestrator,
                 config: Optional[RealtimeConfig] = None,
                 event_bus: Optional[EventBus] = None,
                 host: str = '0.0.0.0', port: int = 8080):
        self.orchestrator = orchestrator
        self.config = config or RealtimeConfig()
        self.event_bus = event_bus
        self.host = host
        self.port = port
        self.runner: Optional[web.AppRunner] = None

        self.app = web.Application(middlewares=[error_middleware])
        self.sio = socketio.AsyncServer(
            async_mode='aiohttp',
            cors_allowed_origins=('*' if '*' in self.config.cors_origins
                                  else self.config.cors_origins),
        )
        self.sio.attach(self.app)

        self.distributor = RealtimeDistributor(
            self._emit_to_subscriber, self.config.delivery_timeout_seconds
        )
        if self.event_bus is not None:
            self.event_bus.subscribe(
                EventType.TOKEN_UPDATED,
                self.distributor.handle_token_updated,
                subscriber_id='realtime-distributor',
            )

        self._setup_routes()
        self._setup_socketio_handlers()

    async def _emit_to_subscriber(self, sid: str, event: str, payload: Dict[str, Any]):
        await self.sio.emit(event, payload, to=sid)

    def _setup_routes(self):
        self.app.router.add_get('/health', self.health_handler)
        self.app.router.add_get('/api/v2/tokens/{token}', self.get_token_handler)
        self.app.router.add_post('/api/v2/tokens/batch', self.batch_handler)

        cors = aiohttp_cors.setup(self.app, defaults={
            origin: aiohttp_cors.ResourceOptions(
                allow_credentials=True,
                expose_headers="*",
                allow_headers="*",
                allow_methods="*"
            )
            for origin in self.config.cors_origins
        })
        # Socket.IO registers its own routes; only decorate ours
        for resource in list(self.app.router.resources()):
            if resource.canonical.startswith(('/health', '/api/')):
                for route in resource:
                    cors.add(route)

    def _setup_socketio_handlers(self):
        """Setup Socket.IO event handlers"""

        @self.sio.event
        async def connect(sid, environ):
            logger.info(f"Client connected: {sid}")

        @self.sio.event
        async def disconnect(sid, *args):
            removed = self.distributor.remove_subscriber(sid)
            logger.info(f"Client disconnected: {sid} ({removed} subscriptions dropped)")

        @self.sio.event
        async def subscribe(sid, data):
            try:
                token_id = _extract_token(data)
            except MalformedInputError as e:
                return {'success': False, 'error': 'malformed_input', 'message': e.message}
            self.distributor.subscribe(sid, token_id)
            return {'success': True, 'tokenMint': token_id}

        @self.sio.event
        async def unsubscribe(sid, data):
            try:
                token_id = _extract_token(data)
            except MalformedInputError as e:
                return {'success': False, 'error': 'malformed_input', 'message': e.message}
            self.distributor.unsubscribe(sid, token_id)
            return {'success': True, 'tokenMint': token_id}

    # ------------------------------------------------------------------
    # HTTP handlers
    # ------------------------------------------------------------------

    async def health_handler(self, request: web.Request) -> web.Response:
        body = {
            'status': 'ok',
            'realtime': self.distributor.get_stats(),
            'fetcher': dict(self.orchestrator.fetcher.stats),
            'orchestrator': dict(self.orchestrator.stats),
        }
        if self.event_bus is not None:
            body['events'] = self.event_bus.get_stats()
        return web.json_response(body)

    async def get_token_handler(self, request: web.Request) -> web.Response:
        token_id = request.match_info['token']
        wallet_id = request.query.get('wallet')
        state = await self.orchestrator.get_token_state(token_id, wallet_id)
        return web.Response(body=state.to_json(), content_type='application/json')

    async def batch_handler(self, request: web.Request) -> web.Response:
        try:
            data = await request.json(loads=orjson.loads)
        except ValueError:
            raise MalformedInputError('body', None, 'invalid JSON')
        if not isinstance(data, dict):
            raise MalformedInputError('body', None, 'expected an object')

        results = await self.orchestrator.get_token_states(
            data.get('tokens'), data.get('wallet')
        )
        try:
            body = orjson.dumps({
                'tokens': [r.to_dict() for r in results],
                'count': len(results),
            })
        except TypeError as e:
            raise SerializationError(f"Cannot encode batch response: {e}") from e
        return web.Response(body=body, content_type='application/json')

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Start the HTTP server"""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        logger.info(f"TokenWatch API running on http://{self.host}:{self.port}")

    async def stop(self):
        await self.distributor.close()
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
