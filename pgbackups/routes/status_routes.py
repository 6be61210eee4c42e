"""
Status routes - read-only views of the status ledger.
"""

from datetime import date, timedelta

from flask import Blueprint, jsonify, request, current_app

from pgbackups.status import StatusRecorder, summarize


bp = Blueprint('status', __name__, url_prefix='/api/status')

DEFAULT_DAYS = 7
MAX_DAYS = 366


def _since() -> date:
    days = request.args.get('days', DEFAULT_DAYS, type=int)
    days = max(0, min(days, MAX_DAYS))
    return date.today() - timedelta(days=days)


def _recorder() -> StatusRecorder:
    return StatusRecorder(current_app.config['STATUS_FILE'])


@bp.route('/recent', methods=['GET'])
def get_recent():
    """
    Get ledger records from the last N days (?days=, default 7).

    Returns:
        JSON array of records in ledger order
    """
    records = _recorder().query(_since())
    return jsonify([entry.to_dict() for entry in records])


@bp.route('/summary', methods=['GET'])
def get_summary():
    """
    Get success/failure totals for the last N days (?days=, default 7).

    Returns:
        JSON with total, succeeded, failed, total_bytes and per-site counts
    """
    since = _since()
    summary = summarize(_recorder().query(since))
    summary['since'] = since.isoformat()
    return jsonify(summary)
