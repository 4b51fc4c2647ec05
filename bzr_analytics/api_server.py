#!/usr/bin/env python3
"""
BZR Transfer Analytics API Server
Serves analytics and ingestion health to the dashboard
"""
import logging

from flask import Flask, jsonify, request

from bzr_analytics.analytics.engine import AnalyticsEngine
from bzr_analytics.config import config
from bzr_analytics.database.connection import db_manager
from bzr_analytics.errors import AnalyticsError
from bzr_analytics.health import build_health_report, load_chain_snapshots

logger = logging.getLogger(__name__)

app = Flask(__name__)

analytics_engine = AnalyticsEngine()


# =============================================================================
# Helper Functions
# =============================================================================

def get_param(args, *names, default=None):
    """First non-empty value among alternative parameter names"""
    for name in names:
        value = args.get(name)
        if value not in (None, ''):
            return value
    return default


def error_response(error: AnalyticsError):
    return jsonify(error.to_dict()), error.status


# =============================================================================
# Analytics
# =============================================================================

@app.route('/api/analytics')
def get_analytics():
    """Daily series, trends, forecasts, anomalies and leaderboards"""
    time_range = get_param(request.args, 'timeRange', 'range', default='30d')
    chain_id = get_param(request.args, 'chainId', 'chain', default='all')
    decimals = get_param(request.args, 'decimals')

    try:
        return jsonify(analytics_engine.compute(time_range, chain_id, decimals))
    except AnalyticsError as e:
        if e.status >= 500:
            logger.error(f"Analytics request failed ({e.code}): {e.message}")
        return error_response(e)


# =============================================================================
# Health
# =============================================================================

@app.route('/api/health')
def health_check():
    """Store readiness, ingestion lag and per-chain health"""
    try:
        report = build_health_report(db_manager)
    except Exception as e:
        logger.error(f"Error building health report: {e}")
        return jsonify({'status': 'error', 'error': {'code': 'HEALTH_UNAVAILABLE',
                                                     'message': 'Failed to build health report'}}), 500
    return jsonify(report), 200 if report['status'] != 'initializing' else 503


@app.route('/api/system-status')
def get_system_status():
    """Ingestion cursor state for every chain"""
    try:
        store_ready = db_manager.is_ready()
        if not store_ready:
            return jsonify({'success': False, 'error': {'code': 'STORE_UNAVAILABLE',
                                                        'message': 'Transfer store is not ready'}}), 503
        snapshots = load_chain_snapshots(db_manager, store_ready=True)
        return jsonify([snapshot.to_dict() for snapshot in snapshots])

    except Exception as e:
        logger.error(f"Error getting system status: {e}")
        return jsonify({'success': False, 'error': {'code': 'SYSTEM_STATUS_FAILED',
                                                    'message': 'Failed to fetch system status'}}), 500


@app.errorhandler(404)
def not_found(_error):
    return jsonify({'success': False, 'error': {'code': 'NOT_FOUND', 'message': 'Unknown endpoint'}}), 404


# =============================================================================
# Main Entry Point
# =============================================================================

if __name__ == '__main__':
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger.info("Starting BZR Transfer Analytics API server...")
    logger.info(f"API will be available at http://localhost:{config.API_PORT}")
    app.run(host=config.API_HOST, port=config.API_PORT)
