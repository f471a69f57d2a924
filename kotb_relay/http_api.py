"""
HTTP collaborator API: participant CRUD and a health check.
"""

import json
import logging

from aiohttp import web

from .messages import MessageValidationError, ProfileUpdateMessage, RegisterParticipantMessage
from .relay import Relay
from .state_store import utc_now_iso

logger = logging.getLogger('HttpApi')


class TrackingHttpApi:
    """aiohttp handlers bound to the relay's store and registry."""

    def __init__(self, relay: Relay):
        self.relay = relay
        self.store = relay.store
        self.registry = relay.registry

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/health', self.handle_health)
        app.router.add_get('/api/participants', self.handle_list)
        app.router.add_post('/api/participants', self.handle_create)
        app.router.add_get('/api/participants/{participant_id}', self.handle_get)
        app.router.add_put('/api/participants/{participant_id}', self.handle_update)
        app.router.add_delete('/api/participants/{participant_id}', self.handle_delete)
        return app

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            'status': 'ok',
            'timestamp': utc_now_iso(),
            'activeParticipants': self.store.active_count(),
            'connectedClients': len(self.registry),
        })

    async def handle_list(self, request: web.Request) -> web.Response:
        snapshot = self.store.snapshot_all()
        participants = []
        for profile in self.store.all_profiles():
            participants.append({**profile, 'tracking': snapshot.pop(profile['id'], None)})
        # tracked devices without a profile, e.g. legacy participant numbers
        for participant_id, tracking in snapshot.items():
            participants.append({'id': participant_id, 'tracking': tracking})
        return web.json_response(participants)

    async def handle_get(self, request: web.Request) -> web.Response:
        participant_id = request.match_info['participant_id']
        profile = self.store.find_profile(participant_id)
        tracking = self.store.get_tracking(participant_id)
        if profile is None and tracking is None:
            return web.json_response({'error': 'Participant not found'}, status=404)
        body = profile.to_dict() if profile else {'id': participant_id}
        body['tracking'] = tracking.to_dict() if tracking else None
        return web.json_response(body)

    async def handle_create(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        try:
            message = RegisterParticipantMessage.from_data(body)
        except MessageValidationError as e:
            raise _bad_request(str(e))
        if message.id and self.store.find_profile(message.id):
            raise web.HTTPConflict(text=json.dumps({'error': 'Participant already exists'}),
                                   content_type='application/json')

        profile = self.store.upsert_profile(message.profile_fields()).to_dict()
        await self.relay.broadcast_to_organizers('participant_registered', profile)
        return web.json_response(profile, status=201)

    async def handle_update(self, request: web.Request) -> web.Response:
        participant_id = request.match_info['participant_id']
        if self.store.find_profile(participant_id) is None:
            return web.json_response({'error': 'Participant not found'}, status=404)
        body = await self._read_body(request)
        try:
            message = ProfileUpdateMessage.from_data(body)
        except MessageValidationError as e:
            raise _bad_request(str(e))
        profile = self.store.update_profile(participant_id, message.values).to_dict()
        await self.relay.broadcast_to_organizers('profile_updated', profile)
        return web.json_response(profile)

    async def handle_delete(self, request: web.Request) -> web.Response:
        participant_id = request.match_info['participant_id']
        if not self.store.delete_profile(participant_id):
            return web.json_response({'error': 'Participant not found'}, status=404)
        await self.relay.broadcast_to_organizers('participant_deleted', {'id': participant_id})
        return web.json_response({'success': True, 'id': participant_id})

    @staticmethod
    async def _read_body(request: web.Request) -> dict:
        try:
            body = await request.json()
        except (ValueError, RecursionError):
            raise _bad_request('Invalid JSON')
        if not isinstance(body, dict):
            raise _bad_request('Expected a JSON object')
        return body


def _bad_request(error: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(text=json.dumps({'error': error}), content_type='application/json')
