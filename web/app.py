"""JSON API over the recorder service.

Every route maps onto one ``RecorderService`` operation and returns its
``{success, data, error}`` envelope. Failed envelopes are sent with an HTTP
status derived from the error code.
"""

import mimetypes
from pathlib import Path

from flask import Flask, abort, jsonify, request, send_file

from recorder.models import RecordKind, Result

STATUS_BY_CODE = {
    "ValueError": 400,
    "NotFound": 404,
    "AlreadyActive": 409,
    "AlreadyRecording": 409,
    "CaptureUnavailable": 503,
}


def envelope(result: Result):
    """Serialize a Result, choosing the HTTP status from its error code."""
    status = 200 if result.success else STATUS_BY_CODE.get(result.code, 500)
    return jsonify(result.to_dict()), status


def _limit(default: int) -> int:
    return request.args.get("limit", default=default, type=int) or default


def create_app(service) -> Flask:
    """Build the Flask app around an existing service instance."""
    app = Flask(__name__)
    app.config["RECORDER_SERVICE"] = service

    @app.route('/api/status')
    def api_status():
        return envelope(service.loop_status())

    # -------------------------------------------------------------------------
    # Capture loops
    # -------------------------------------------------------------------------

    @app.route('/api/loops/<name>/start', methods=['POST'])
    def api_start_loop(name):
        data = request.get_json(silent=True) or {}
        return envelope(service.start_loop(name, data.get("interval_ms")))

    @app.route('/api/loops/<name>/stop', methods=['POST'])
    def api_stop_loop(name):
        return envelope(service.stop_loop(name))

    @app.route('/api/loops/<name>/recent')
    def api_recent(name):
        return envelope(service.get_recent(name, _limit(50)))

    # -------------------------------------------------------------------------
    # Timeline
    # -------------------------------------------------------------------------

    @app.route('/api/timeline/<date_string>')
    def api_timeline_for_date(date_string):
        group_by = request.args.get("group")
        result = service.get_timeline_for_date(date_string)
        if group_by and result.success:
            result = service.group_timeline_items(result.data, group_by)
        return envelope(result)

    @app.route('/api/timeline')
    def api_timeline_range():
        start, end = request.args.get("start"), request.args.get("end")
        if not start or not end:
            return envelope(Result.fail(ValueError("Both 'start' and 'end' parameters required")))
        return envelope(service.get_timeline_range(start, end))

    @app.route('/api/timeline/group', methods=['POST'])
    def api_group_timeline():
        data = request.get_json(silent=True) or {}
        items = data.get("items")
        if not isinstance(items, list):
            return envelope(Result.fail(ValueError("'items' must be a list")))
        return envelope(service.group_timeline_items(items, data.get("groupBy", "hour")))

    @app.route('/api/summary')
    def api_summary():
        start, end = request.args.get("start"), request.args.get("end")
        if not start or not end:
            return envelope(Result.fail(ValueError("Both 'start' and 'end' parameters required")))
        return envelope(service.get_activity_summary(start, end))

    @app.route('/api/summary/apps')
    def api_app_usage():
        start, end = request.args.get("start"), request.args.get("end")
        if not start or not end:
            return envelope(Result.fail(ValueError("Both 'start' and 'end' parameters required")))
        return envelope(service.get_app_usage_summary(start, end, _limit(10)))

    @app.route('/api/summary/websites')
    def api_website_usage():
        start, end = request.args.get("start"), request.args.get("end")
        if not start or not end:
            return envelope(Result.fail(ValueError("Both 'start' and 'end' parameters required")))
        return envelope(service.get_website_summary(start, end, _limit(10)))

    @app.route('/api/summary/daily/<date_string>')
    def api_daily_summary(date_string):
        return envelope(service.get_daily_summary(date_string))

    @app.route('/api/counts')
    def api_counts():
        return envelope(service.get_activity_counts())

    # -------------------------------------------------------------------------
    # Items and deletion
    # -------------------------------------------------------------------------

    @app.route('/api/items/<item_type>/<int:item_id>', methods=['GET'])
    def api_get_item(item_type, item_id):
        return envelope(service.get_item(item_id, item_type))

    @app.route('/api/items/<item_type>/<int:item_id>', methods=['DELETE'])
    def api_delete_item(item_type, item_id):
        return envelope(service.delete_item(item_id, item_type))

    @app.route('/api/days/<date_string>/items', methods=['DELETE'])
    def api_delete_day(date_string):
        item_type = request.args.get("type")
        if item_type:
            return envelope(service.delete_items_by_type(date_string, item_type))
        return envelope(service.delete_all_items(date_string))

    @app.route('/api/retention/purge', methods=['POST'])
    def api_purge():
        data = request.get_json(silent=True) or {}
        days = data.get("days")
        if days is not None and (isinstance(days, bool) or not isinstance(days, int)):
            return envelope(Result.fail(ValueError("'days' must be an integer")))
        return envelope(service.purge_older_than(days))

    @app.route('/media/<item_type>/<int:item_id>')
    def serve_media(item_type, item_id):
        """Serve the screenshot image or audio file behind a record."""
        try:
            kind = RecordKind.parse(item_type)
        except ValueError:
            abort(404)
        if kind not in (RecordKind.SCREENSHOT, RecordKind.AUDIO):
            abort(404)

        result = service.get_item(item_id, kind)
        if not result.success:
            abort(404, result.error)

        file_path = Path(result.data.path)
        if not file_path.exists():
            abort(404, "File not found on disk")
        mimetype = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
        return send_file(file_path, mimetype=mimetype)

    # -------------------------------------------------------------------------
    # Insights
    # -------------------------------------------------------------------------

    @app.route('/api/insights/generate', methods=['POST'])
    def api_generate_insight():
        data = request.get_json(silent=True) or {}
        return envelope(service.generate_insight(data.get("timeframe", "day")))

    @app.route('/api/insights')
    def api_insights():
        return envelope(service.get_recent_insights(_limit(10)))

    @app.route('/api/ai/screenshot/<int:item_id>', methods=['POST'])
    def api_process_screenshot(item_id):
        return envelope(service.process_screenshot(item_id))

    @app.route('/api/ai/audio/<int:item_id>', methods=['POST'])
    def api_process_recording(item_id):
        return envelope(service.process_recording(item_id))

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    @app.route('/api/config')
    def api_config():
        return envelope(service.get_config())

    @app.route('/api/config/<section>/<key>', methods=['PUT'])
    def api_update_config(section, key):
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or "value" not in data:
            return envelope(Result.fail(ValueError("Body must be a JSON object with a 'value' field")))
        return envelope(service.update_config(section, key, data["value"]))

    return app
