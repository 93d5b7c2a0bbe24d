"""
HTTP routes: viewport POI loads, cancellation, category listing, metrics.
"""
import time
from dataclasses import asdict

from quart import Blueprint, current_app, jsonify, request

from trakke import metrics
from trakke.categories import CategoryRouter, parse_categories
from trakke.models import InvalidBoundsError, ViewportBounds

bp = Blueprint('trakke', __name__)

DEFAULT_VIEW = "default"


def _state():
    return current_app.extensions["trakke"]


def report_to_dict(report) -> dict:
    out = asdict(report)
    out["failed_categories"] = [c.value for c in report.failed_categories]
    return out


@bp.route('/api/pois', methods=['GET'])
async def get_pois():
    """Load POIs for a viewport and return the published state.

    Query: north, south, east, west, categories=a,b, view.
    202 with the current state when a load for this view is already running.
    """
    args = request.args
    try:
        bounds = ViewportBounds.from_mapping(args)
    except InvalidBoundsError as e:
        current_app.logger.info(f"[POIS] rejected bounds: {e}")
        return jsonify({'error': str(e)}), 400

    categories = parse_categories(args.getlist('categories'))
    view = args.get('view') or DEFAULT_VIEW
    pipeline = _state().pipeline(view)

    if pipeline.in_flight:
        return jsonify(pipeline.state.to_dict()), 202

    report = await pipeline.load_viewport(bounds, categories)
    body = pipeline.state.to_dict()
    if report is not None:
        body['report'] = report_to_dict(report)
    return jsonify(body)


@bp.route('/api/pois/cancel', methods=['POST'])
async def cancel_pois():
    view = request.args.get('view') or DEFAULT_VIEW
    state = _state()
    cancelled = state.pipeline(view).cancel() if state.has_view(view) else False
    return jsonify({'view': view, 'cancelled': cancelled})


@bp.route('/api/categories', methods=['GET'])
async def list_categories():
    return jsonify({'categories': CategoryRouter().describe()})


@bp.route('/metrics/json', methods=['GET'])
async def metrics_json():
    return jsonify(await metrics.get_metrics())


@bp.route('/healthz')
async def healthz():
    """Lightweight health endpoint returning component status."""
    state = _state()
    return jsonify({
        'app': 'ok',
        'time': time.time(),
        'ready': state.session is not None,
        'redis': state.redis_client is not None,
        'views': len(state),
    })
