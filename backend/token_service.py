"""
Video Token Service
===================

Mints short-lived access tokens for the demo and manages rooms through
the vendor REST API: idempotent room creation with a requested topology,
room completion, and room listing.
"""

import json
import uuid
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from livekit import api
from livekit.api import AccessToken

from config import MAX_ALLOWED_SESSION_DURATION, EnvironmentCredentials

logger = logging.getLogger("token_service")

TOPOLOGIES = ("group", "group-small", "peer-to-peer", "go")

# Participant caps for the small topologies
TOPOLOGY_MAX_PARTICIPANTS = {"go": 2, "peer-to-peer": 10}

ROOM_OPTION_FIELDS = ("empty_timeout", "departure_timeout", "max_participants", "metadata")


class TokenServiceError(Exception):
    """Base exception for token and room service errors"""

    status_code = 500


class InvalidRoomOptionsError(TokenServiceError):
    """Raised for an unknown topology or malformed extra room options"""

    status_code = 400


class RoomCreationError(TokenServiceError):
    """Raised when the vendor refuses to create (or return) a room"""

    status_code = 502


def random_identity() -> str:
    return "user-" + str(uuid.uuid4())[:8]


def generate_room_name() -> str:
    return "room-" + str(uuid.uuid4())[:8]


def parse_room_options(extra_room_options: Optional[Any]) -> Dict[str, Any]:
    """
    Parse extra room options given as a JSON object string (or a dict).

    Raises:
        InvalidRoomOptionsError: On malformed JSON or unsupported keys
    """
    if not extra_room_options:
        return {}
    if isinstance(extra_room_options, str):
        try:
            extra_room_options = json.loads(extra_room_options)
        except json.JSONDecodeError as e:
            raise InvalidRoomOptionsError(f"extraRoomOptions is not valid JSON: {e}")
    if not isinstance(extra_room_options, dict):
        raise InvalidRoomOptionsError("extraRoomOptions must be a JSON object")

    unknown = sorted(set(extra_room_options) - set(ROOM_OPTION_FIELDS))
    if unknown:
        raise InvalidRoomOptionsError(f"Unsupported room options: {', '.join(unknown)}")
    return dict(extra_room_options)


def room_to_dict(room: Any) -> Dict[str, Any]:
    return {
        "name": room.name,
        "sid": room.sid,
        "participant_count": room.num_participants,
        "max_participants": room.max_participants,
        "creation_time": room.creation_time,
        "metadata": room.metadata,
    }


def _is_already_exists(error: Exception) -> bool:
    code = getattr(error, "code", None)
    return code == "already_exists" or "already exists" in str(error).lower()


class VideoTokenService:
    """
    Token minting and room management for one environment.

    This class handles:
    - Access token generation bounded to MAX_ALLOWED_SESSION_DURATION
    - Idempotent room creation ("already exists" is a success)
    - Completing (closing) rooms and listing active rooms
    """

    def __init__(self, credentials: EnvironmentCredentials):
        self.credentials = credentials
        logger.debug(
            f"🔐 VideoTokenService for '{credentials.environment}' "
            f"using key {credentials.masked_key()}"
        )

    def generate_access_token(
        self,
        identity: str,
        room_name: Optional[str] = None,
        ttl_seconds: int = MAX_ALLOWED_SESSION_DURATION,
    ) -> str:
        """
        Generate a room access token.

        Args:
            identity (str): Participant identity (also used as display name)
            room_name (str, optional): Room to grant; a random room name when omitted
            ttl_seconds (int): Token lifetime, at most 4 hours

        Returns:
            str: Signed JWT access token

        Raises:
            TokenServiceError: If the lifetime is out of bounds or signing fails
        """
        if not identity:
            raise TokenServiceError("identity is required")
        if ttl_seconds <= 0 or ttl_seconds > MAX_ALLOWED_SESSION_DURATION:
            raise TokenServiceError(
                f"Token lifetime must be within 1..{MAX_ALLOWED_SESSION_DURATION} seconds"
            )

        if not room_name:
            room_name = generate_room_name()

        try:
            grant = api.VideoGrants(room_join=True, room=room_name)
            token = (
                AccessToken(self.credentials.api_key, self.credentials.api_secret)
                .with_identity(identity)
                .with_name(identity)
                .with_ttl(timedelta(seconds=ttl_seconds))
                .with_grants(grant)
            )
            jwt_token = token.to_jwt()
        except Exception as e:
            logger.error(f"❌ Failed to generate access token: {e}")
            raise TokenServiceError(f"Token generation failed: {e}")

        logger.info(f"🎟️ Token issued for {identity} (room: {room_name})")
        return jwt_token

    def _client(self) -> api.LiveKitAPI:
        return api.LiveKitAPI(
            url=self.credentials.url,
            api_key=self.credentials.api_key,
            api_secret=self.credentials.api_secret,
        )

    def build_create_request(
        self,
        room_name: str,
        topology: Optional[str] = None,
        extra_room_options: Optional[Any] = None,
    ) -> api.CreateRoomRequest:
        if topology and topology not in TOPOLOGIES:
            raise InvalidRoomOptionsError(
                f"Unknown topology {topology!r}; expected one of {', '.join(TOPOLOGIES)}"
            )
        options = parse_room_options(extra_room_options)

        metadata = options.pop("metadata", None)
        if topology:
            meta = {"topology": topology}
            if metadata:
                meta["metadata"] = metadata
            metadata = json.dumps(meta)
            if topology in TOPOLOGY_MAX_PARTICIPANTS:
                options.setdefault("max_participants", TOPOLOGY_MAX_PARTICIPANTS[topology])
        if metadata:
            options["metadata"] = metadata if isinstance(metadata, str) else json.dumps(metadata)

        return api.CreateRoomRequest(name=room_name, **options)

    async def create_room(
        self,
        room_name: str,
        topology: Optional[str] = None,
        extra_room_options: Optional[Any] = None,
    ) -> Dict[str, Any]:
        """
        Ensure a room exists. An "already exists" answer is treated as success.

        Returns:
            Dict: The room as returned by the vendor

        Raises:
            InvalidRoomOptionsError: For an unknown topology or bad options
            RoomCreationError: If the vendor fails to create or return the room
        """
        if not room_name:
            raise InvalidRoomOptionsError("roomName is required")
        request = self.build_create_request(room_name, topology, extra_room_options)

        logger.info(f"🏗️ Creating room {room_name} (topology: {topology or 'default'})")
        lkapi = self._client()
        try:
            try:
                room = await lkapi.room.create_room(request)
            except Exception as e:
                if not _is_already_exists(e):
                    raise
                logger.info(f"🏠 Room {room_name} already exists, fetching it")
                response = await lkapi.room.list_rooms(api.ListRoomsRequest(names=[room_name]))
                if not response.rooms:
                    raise
                room = response.rooms[0]
        except TokenServiceError:
            raise
        except Exception as e:
            logger.error(f"❌ Error creating room {room_name}: {e}")
            raise RoomCreationError(f"Room creation failed: {e}")
        finally:
            await lkapi.aclose()

        logger.info(f"✅ Room ready: {room.name} ({room.sid})")
        return room_to_dict(room)

    async def complete_room(self, room_name: str) -> Dict[str, Any]:
        """Close a room, disconnecting everyone in it."""
        if not room_name:
            raise InvalidRoomOptionsError("roomName is required")

        lkapi = self._client()
        try:
            await lkapi.room.delete_room(api.DeleteRoomRequest(room=room_name))
        except Exception as e:
            logger.error(f"❌ Failed to complete room {room_name}: {e}")
            raise TokenServiceError(f"Room completion failed: {e}")
        finally:
            await lkapi.aclose()

        logger.info(f"🏁 Room {room_name} completed")
        return {"name": room_name, "status": "completed"}

    async def list_rooms(self) -> List[Dict[str, Any]]:
        lkapi = self._client()
        try:
            response = await lkapi.room.list_rooms(api.ListRoomsRequest())
        except Exception as e:
            logger.error(f"❌ Failed to list rooms: {e}")
            raise TokenServiceError(f"Room listing failed: {e}")
        finally:
            await lkapi.aclose()

        return [room_to_dict(room) for room in response.rooms]
