"""
Token and room HTTP service for the video demo.

GET /token            access token, optionally ensuring a room of a topology exists
GET /getOrCreateRoom  ensure a room exists and return it with a token
GET /completeRoom     close a room
GET /rooms            list active rooms
GET /status           health check
"""

import logging
from datetime import datetime

from flask import Flask, request, jsonify
from flask_cors import CORS

from config import (
    DEFAULT_ENVIRONMENT,
    TOKEN_SERVER_HOST,
    TOKEN_SERVER_PORT,
    ConfigError,
    get_credentials,
    get_log_level,
)
from token_service import (
    RoomCreationError,
    TokenServiceError,
    VideoTokenService,
    generate_room_name,
    random_identity,
)

logger = logging.getLogger("server")


def get_token_service(environment: str) -> VideoTokenService:
    return VideoTokenService(get_credentials(environment))


def error_response(error: Exception):
    if isinstance(error, TokenServiceError):
        status = error.status_code
    else:
        status = 500
    return jsonify({"success": False, "error": str(error)}), status


def create_app() -> Flask:
    app = Flask(__name__)
    CORS(app, resources={r"/*": {"origins": "*"}})

    @app.route("/token")
    async def get_token():
        args = request.args
        identity = args.get("identity") or random_identity()
        environment = args.get("environment", DEFAULT_ENVIRONMENT)
        topology = args.get("topology")
        room_name = args.get("roomName") or generate_room_name()
        extra_room_options = args.get("extraRoomOptions")

        try:
            service = get_token_service(environment)
            response = {"identity": identity}

            if topology:
                # topology was specified, the room has to exist first
                try:
                    response["room"] = await service.create_room(
                        room_name, topology, extra_room_options
                    )
                    response["room_created"] = True
                except RoomCreationError as e:
                    logger.warning(
                        f"⚠️ Failed to create room {room_name}, issuing token anyway: {e}"
                    )
                    response["room_created"] = False

            response["token"] = service.generate_access_token(identity, room_name)
            response["roomName"] = room_name
            return jsonify(response)

        except (ConfigError, TokenServiceError) as e:
            logger.error(f"❌ Failed to issue token for {identity}: {e}")
            return error_response(e)

    @app.route("/getOrCreateRoom")
    async def get_or_create_room():
        args = request.args
        room_name = args.get("roomName")
        environment = args.get("environment", DEFAULT_ENVIRONMENT)
        identity = args.get("identity") or random_identity()

        try:
            service = get_token_service(environment)
            room = await service.create_room(
                room_name, args.get("topology"), args.get("extraRoomOptions")
            )
            room["token"] = service.generate_access_token(identity, room_name)
            room["identity"] = identity
            return jsonify(room)

        except (ConfigError, TokenServiceError) as e:
            logger.error(f"❌ getOrCreateRoom failed for {room_name}: {e}")
            return error_response(e)

    @app.route("/completeRoom")
    async def complete_room():
        args = request.args
        room_name = args.get("roomName")
        environment = args.get("environment", DEFAULT_ENVIRONMENT)

        try:
            service = get_token_service(environment)
            return jsonify(await service.complete_room(room_name))
        except (ConfigError, TokenServiceError) as e:
            logger.error(f"❌ completeRoom failed for {room_name}: {e}")
            return error_response(e)

    @app.route("/rooms")
    async def list_rooms():
        environment = request.args.get("environment", DEFAULT_ENVIRONMENT)
        try:
            logger.info("📋 Listing active rooms")
            rooms = await get_token_service(environment).list_rooms()
            return jsonify({"success": True, "rooms": rooms, "total_rooms": len(rooms)})
        except (ConfigError, TokenServiceError) as e:
            logger.error(f"❌ Failed to list rooms: {e}")
            return error_response(e)

    @app.route("/status")
    def status():
        return jsonify({"status": "healthy", "timestamp": str(datetime.utcnow())})

    return app


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(level=get_log_level())
    app.run(host=TOKEN_SERVER_HOST, port=TOKEN_SERVER_PORT, debug=True)
