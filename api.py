"""
api.py - Flask 状态接口（只读）
查看同步状态、已应用用户、待上报流量
"""

import logging
from datetime import datetime
from flask import Flask, jsonify

logger = logging.getLogger('nodesync.api')


def fmt_bytes(b: int) -> str:
    if b is None: b = 0
    b = int(b)
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if b < 1024:
            return f"{b:.2f} {unit}"
        b /= 1024
    return f"{b:.2f} PB"


def create_app(controller):
    app = Flask(__name__)
    app.config['JSON_SORT_KEYS'] = False

    @app.route('/api/health')
    def api_health():
        ok = controller.state.value in ('starting', 'running')
        body = {'status': 'ok' if ok else controller.state.value, 'ts': datetime.now().isoformat()}
        return jsonify(body), (200 if ok else 503)

    @app.route('/api/status')
    def api_status():
        status = controller.status()
        pending = status['pending']
        pending['up_fmt'] = fmt_bytes(pending['up_bytes'])
        pending['down_fmt'] = fmt_bytes(pending['down_bytes'])
        status['reported_fmt'] = fmt_bytes(status['reported_bytes'])
        return jsonify(status)

    @app.route('/api/users')
    def api_users():
        ids = controller.applied_user_ids()
        return jsonify({'count': len(ids), 'user_ids': ids})

    # ── 待上报流量（不清零）────────────────────────────────────────────────────
    @app.route('/api/traffic/pending')
    def api_traffic_pending():
        snapshot = controller.accumulator.peek()
        users = [
            {'user_id': e.user_id, 'up_bytes': e.upload_bytes, 'down_bytes': e.download_bytes,
             'total_fmt': fmt_bytes(e.total)}
            for e in snapshot
        ]
        return jsonify({
            'users': users,
            'up_bytes': snapshot.upload_bytes,
            'down_bytes': snapshot.download_bytes,
        })

    return app
