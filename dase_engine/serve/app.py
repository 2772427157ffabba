"""
Engine Query API Service

Flask web service in front of an EngineServer.
Endpoint: POST /queries.json  {"user": "u1", "num": 10}
Returns: {"itemScores": [{"item": "i3", "score": 4.2}, ...]}

Enhanced with:
- Request validation and malformed request logging
- Hot reload of the current instance (POST /reload)
- Provenance headers (request id, engine instance)
"""

import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from flask import Flask, jsonify, make_response, request

from .. import config
from ..deploy import EngineServer
from ..exceptions import EngineError, EngineNotDeployed, NoPredictionAvailable
from ..prediction import Query

logger = logging.getLogger(__name__)

# Separate logger for malformed requests
malformed_logger = logging.getLogger("malformed_requests")


def log_malformed_request(error_type: str, details: Dict) -> None:
    """
    Log malformed request with detailed information.

    Args:
        error_type: Type of validation error
        details: Dictionary with request details
    """
    log_entry = {
        'timestamp': datetime.now().isoformat(),
        'error_type': error_type,
        'ip': request.remote_addr,
        'path': request.path,
        'method': request.method,
        'user_agent': request.headers.get('User-Agent', 'Unknown'),
        'details': details,
    }
    malformed_logger.warning(f"{error_type}: {log_entry}")


def parse_query(payload: Any) -> Query:
    """
    Validate a query body.

    Raises:
        ValueError: missing user, bad num, or num above SERVING_CONFIG['max_num']
    """
    query = Query.from_dict(payload)
    max_num = config.SERVING_CONFIG["max_num"]
    if query.num > max_num:
        raise ValueError(f"num cannot exceed {max_num}, got {query.num}")
    return query


def create_app(server: EngineServer) -> Flask:
    """
    Build the Flask app serving queries for `server`.

    Args:
        server: Query runtime (already reloaded, or reloaded later via /reload)
    """
    app = Flask(__name__)

    def _with_headers(resp, req_id: Optional[str] = None, instance_id: Optional[int] = None):
        resp.headers['X-Request-Id'] = req_id or str(uuid.uuid4())
        if instance_id is None:
            instance_id = server.instance_id
        resp.headers['X-Engine-Instance'] = str(instance_id) if instance_id is not None else "none"
        return resp

    @app.errorhandler(404)
    def not_found(error):
        """Handle 404 Not Found errors."""
        log_malformed_request('ENDPOINT_NOT_FOUND', {'path': request.path})
        return jsonify({
            'error': 'Not Found',
            'message': 'The requested endpoint does not exist',
            'available_endpoints': ['/', '/health', '/queries.json', '/reload'],
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        """Handle 405 Method Not Allowed errors."""
        allowed = list(getattr(error, 'valid_methods', None) or [])
        log_malformed_request('METHOD_NOT_ALLOWED', {'allowed_methods': allowed})
        return jsonify({
            'error': 'Method Not Allowed',
            'message': f'The {request.method} method is not allowed for this endpoint',
            'allowed_methods': allowed,
        }), 405

    @app.errorhandler(500)
    def internal_error(error):
        """Handle 500 Internal Server Error."""
        logger.error(f"Internal server error: {error}", exc_info=True)
        return jsonify({
            'error': 'Internal Server Error',
            'message': 'An unexpected error occurred',
        }), 500

    @app.before_request
    def log_request():
        """Log all incoming requests."""
        logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.route('/', methods=['GET'])
    def root():
        """Service information and the deployed instance."""
        return _with_headers(jsonify({
            'service': 'DASE Engine Query API',
            **server.status(),
            'endpoints': {
                'health': {'path': '/health', 'method': 'GET'},
                'query': {
                    'path': '/queries.json',
                    'method': 'POST',
                    'body': {
                        'user': 'Required user id',
                        'num': f'Optional positive integer (1-{config.SERVING_CONFIG["max_num"]}, default: 10)',
                    },
                },
                'reload': {'path': '/reload', 'method': 'POST'},
            },
            'timestamp': datetime.now().isoformat(),
        }))

    @app.route('/health', methods=['GET'])
    def health_check():
        """
        Health check endpoint.

        Returns:
            JSON with service status (200 once an instance is loaded, else 503)
        """
        deployed = server.instance_id is not None
        resp = jsonify({
            'status': 'healthy' if deployed else 'not_deployed',
            'engine_instance': server.instance_id,
            'timestamp': datetime.now().isoformat(),
        })
        return _with_headers(resp), 200 if deployed else 503

    @app.route('/queries.json', methods=['POST'])
    def queries():
        """
        Answer one query against the deployed instance.

        Error Responses:
            400: Malformed body, missing user or invalid num
            404: No algorithm could answer for this user
            503: No instance deployed
        """
        start_time = time.time()
        req_id = str(uuid.uuid4())

        payload = request.get_json(silent=True)
        try:
            query = parse_query(payload)
        except ValueError as e:
            log_malformed_request('INVALID_QUERY', {'body': payload, 'error': str(e)})
            return _with_headers(make_response(jsonify({
                'error': 'Invalid request',
                'message': str(e),
            }), 400), req_id)

        try:
            instance_id, result = server.answer(query)
        except EngineNotDeployed as e:
            logger.error(f"Query rejected: {e}")
            return _with_headers(make_response(jsonify({
                'error': 'Service error',
                'message': 'No engine instance deployed',
            }), 503), req_id)
        except NoPredictionAvailable as e:
            logger.info(f"No prediction for user '{query.user}': {e}")
            return _with_headers(make_response(jsonify({
                'error': 'No prediction available',
                'message': str(e),
            }), 404), req_id)

        response_time = time.time() - start_time
        logger.info(
            f"SUCCESS - user={query.user}, num={query.num}, "
            f"n_returned={len(result.item_scores)}, response_time={response_time:.3f}s"
        )
        return _with_headers(make_response(jsonify(result.to_dict()), 200), req_id, instance_id)

    @app.route('/reload', methods=['POST'])
    def reload():
        """Swap in the store's current instance if it changed."""
        try:
            changed = server.reload()
        except EngineError as e:
            logger.error(f"Reload failed: {e}")
            return _with_headers(make_response(jsonify({
                'error': 'Reload failed',
                'message': str(e),
                'engine_instance': server.instance_id,
            }), 409))
        return _with_headers(jsonify({
            'reloaded': changed,
            'engine_instance': server.instance_id,
        }))

    return app
