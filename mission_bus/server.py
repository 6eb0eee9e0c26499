import itertools
import json
import logging
from collections import defaultdict
from typing import Dict, List, Literal, Optional, Set

from pydantic import BaseModel, ValidationError, model_validator
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse


logger = logging.getLogger(__name__)


class EnvelopeModel(BaseModel):
    """Wire shape of a mission envelope as accepted by the bus."""
    kind: Literal["POLL", "CLAIM", "COMMAND", "STATUS"]
    sender_id: str
    mission_id: str
    target_worker_id: Optional[str] = None
    status: Optional[Literal["IDLE", "RUNNING", "SUCCESS", "FAILURE"]] = None
    graph_definition: Optional[str] = None
    required_plugins: Optional[List[str]] = None

    @model_validator(mode="after")
    def _status_required_for_status_kind(self):
        if self.kind == "STATUS" and self.status is None:
            raise ValueError("STATUS envelope without status")
        return self


class SubscriptionModel(BaseModel):
    channel: str


def _validation_details(error: ValidationError):
    return json.loads(error.json())


class MissionBusServer:
    """Channel-based message bus.

    Subscribers register channels and drain their own queue by polling.
    Every message published on a channel is copied to the queue of each
    subscriber of that channel at publish time.
    """

    def __init__(self, host='127.0.0.1', port=8090, name="Mission Bus", version="0.1.0"):
        self.host = host
        self.port = port
        self.name = name
        self.version = version
        self.channel_subscribers: Dict[str, Set[str]] = defaultdict(set)
        self.subscriber_queues: Dict[str, list] = defaultdict(list)
        self._message_ids = itertools.count(1)

        self.app = Starlette()
        self.app.add_route('/status', self._get_status, methods=['GET'])
        self.app.add_route(
            '/subscribers/{subscriber_id}/channels', self._subscribe, methods=['POST']
        )
        self.app.add_route(
            '/subscribers/{subscriber_id}/channels/{channel}', self._unsubscribe, methods=['DELETE']
        )
        self.app.add_route(
            '/subscribers/{subscriber_id}/messages', self._drain_messages, methods=['GET']
        )
        self.app.add_route(
            '/channels/{channel}/messages', self._publish, methods=['POST']
        )

    def start(self):
        import uvicorn

        uvicorn.run(self.app, host=self.host, port=self.port)

    async def _get_status(self, request: Request) -> JSONResponse:
        logger.debug("GET /status requested")
        return JSONResponse({
            'status': 'ok',
            'name': self.name,
            'version': self.version,
            'channels': len(self.channel_subscribers),
            'subscribers': len(self.subscriber_queues),
        })

    async def _subscribe(self, request: Request) -> JSONResponse:
        subscriber_id = request.path_params['subscriber_id']
        try:
            subscription = SubscriptionModel.model_validate(await request.json())
        except json.JSONDecodeError:
            logger.error(f"Invalid JSON in subscription request from {subscriber_id}")
            return JSONResponse({'status': 'error', 'message': 'Invalid JSON format'}, status_code=400)
        except ValidationError as ve:
            logger.error(f"Invalid subscription from {subscriber_id}: {ve.errors()}")
            return JSONResponse({'status': 'error', 'message': 'Invalid subscription format',
                                 'details': _validation_details(ve)}, status_code=400)

        self.channel_subscribers[subscription.channel].add(subscriber_id)
        # Touch the queue so the subscriber is known even before its first message
        self.subscriber_queues[subscriber_id]
        logger.info(f"{subscriber_id} subscribed to {subscription.channel}")
        return JSONResponse({'status': 'subscribed', 'subscriber_id': subscriber_id,
                             'channel': subscription.channel}, status_code=201)

    async def _unsubscribe(self, request: Request) -> JSONResponse:
        subscriber_id = request.path_params['subscriber_id']
        channel = request.path_params['channel']
        subscribers = self.channel_subscribers.get(channel)
        if not subscribers or subscriber_id not in subscribers:
            return JSONResponse({'status': 'error', 'message': f'{subscriber_id} is not subscribed to {channel}'},
                                status_code=404)
        subscribers.discard(subscriber_id)
        if not subscribers:
            del self.channel_subscribers[channel]
        logger.info(f"{subscriber_id} unsubscribed from {channel}")
        return JSONResponse({'status': 'unsubscribed', 'subscriber_id': subscriber_id, 'channel': channel})

    async def _publish(self, request: Request) -> JSONResponse:
        channel = request.path_params['channel']
        try:
            envelope = EnvelopeModel.model_validate(await request.json())
        except json.JSONDecodeError:
            logger.error(f"Invalid JSON published on {channel}")
            return JSONResponse({'status': 'error', 'message': 'Invalid JSON format'}, status_code=400)
        except ValidationError as ve:
            logger.error(f"Invalid envelope published on {channel}: {ve.errors()}")
            return JSONResponse({'status': 'error', 'message': 'Invalid envelope format',
                                 'details': _validation_details(ve)}, status_code=400)

        message_id = next(self._message_ids)
        payload = envelope.model_dump(exclude_none=True)
        recipients = sorted(self.channel_subscribers.get(channel, ()))
        for subscriber_id in recipients:
            self.subscriber_queues[subscriber_id].append(
                {'id': message_id, 'channel': channel, 'envelope': payload})
        logger.info(f"{envelope.kind} from {envelope.sender_id} on {channel} -> {len(recipients)} subscriber(s)")
        return JSONResponse({'status': 'accepted', 'id': message_id, 'recipients': len(recipients)},
                            status_code=202)

    async def _drain_messages(self, request: Request) -> JSONResponse:
        subscriber_id = request.path_params['subscriber_id']
        messages = self.subscriber_queues.get(subscriber_id, [])
        if messages:
            logger.debug(f"Delivering {len(messages)} message(s) to {subscriber_id}")
            self.subscriber_queues[subscriber_id] = []
        return JSONResponse(list(messages))
