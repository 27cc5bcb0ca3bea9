from flask import Flask, render_template, request, redirect, url_for, session, jsonify, flash
from pymongo.errors import PyMongoError
from werkzeug.exceptions import HTTPException
from datetime import datetime
import logging
from logging.handlers import RotatingFileHandler

from powerpal import config
from powerpal.auth import AuthService, LoginThrottle, current_uid, login_required, start_session
from powerpal.controller import build_controller, send_command
from powerpal.errors import AuthError, ControllerError, LoadError, TelemetryError
from powerpal.mongodb import LoadStore, serialize_load
from powerpal.telemetry import LIMIT_FIELD, ThingSpeakClient, TelemetryPoller, map_loads, validate_limit

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def _json_body():
    """Request body as a dict; anything but a JSON object is a 400."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise LoadError("Request body must be a JSON object")
    return data


def configure_logging(settings):
    """Console gets warnings only; the rotating file gets everything at LOG_LEVEL."""
    root = logging.getLogger()
    if getattr(root, '_powerpal_configured', False):
        return
    root.setLevel(getattr(logging, settings['LOG_LEVEL'], logging.INFO))

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console_handler)

    if settings['LOG_FILE']:
        # max 5MB, keep 3 backups
        file_handler = RotatingFileHandler(settings['LOG_FILE'], maxBytes=5*1024*1024, backupCount=3, encoding='utf-8')
        file_handler.setLevel(getattr(logging, settings['LOG_LEVEL'], logging.INFO))
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    root._powerpal_configured = True


def create_app(overrides=None, store=None, telemetry_client=None, controller=None, poller=None):
    """Build the dashboard app.

    Collaborators can be injected; anything not given is built from the
    settings in `powerpal.config` (plus `overrides`).
    """
    settings = config.as_dict(overrides)
    configure_logging(settings)

    app = Flask(__name__)
    app.secret_key = settings['SKEY']
    app.config['TEMPLATES_AUTO_RELOAD'] = True
    app.config['POWERPAL'] = settings

    if store is None:
        store = LoadStore(uri=settings['MONGO_URI'], db_name=settings['MONGO_DB'])
    try:
        store.ensure_indexes()
    except PyMongoError as e:
        logger.error(f"Could not create MongoDB indexes: {e}")

    if telemetry_client is None:
        telemetry_client = ThingSpeakClient(
            settings['THINGSPEAK_URL'],
            settings['THINGSPEAK_CHANNEL_ID'],
            read_key=settings['THINGSPEAK_READ_KEY'],
            write_key=settings['THINGSPEAK_WRITE_KEY'],
            timeout_seconds=settings['REQUEST_TIMEOUT_SECONDS'],
            default_limit=settings['DEFAULT_PERMISSIBLE_LIMIT_W'],
        )
    if controller is None:
        controller = build_controller(settings, telemetry_client)
    if poller is None:
        poller = TelemetryPoller(
            telemetry_client,
            store,
            interval_seconds=settings['POLL_INTERVAL_SECONDS'],
            tariff_per_kwh=settings['TARIFF_PER_KWH'],
        )

    auth = AuthService(
        store,
        LoginThrottle(settings['LOGIN_MAX_ATTEMPTS'], settings['LOGIN_LOCKOUT_SECONDS']),
        bcrypt_rounds=int(settings['BCRYPT_ROUNDS']),
    )
    tariff = settings['TARIFF_PER_KWH']

    app.extensions['powerpal'] = {
        'store': store,
        'telemetry': telemetry_client,
        'controller': controller,
        'poller': poller,
        'auth': auth,
    }

    @app.errorhandler(LoadError)
    def handle_load_error(e):
        return jsonify({'success': False, 'error': e.message}), e.status

    @app.errorhandler(PyMongoError)
    def handle_db_error(e):
        logger.error(f"MongoDB error on {request.path}: {e}")
        if request.path.startswith('/api/'):
            return jsonify({'success': False, 'error': 'Database unavailable'}), 500
        return render_template('error.html', message='Database unavailable, please try again later.'), 500

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        if isinstance(e, HTTPException):
            return e
        logger.error(f"Unhandled error on {request.path}: {e}", exc_info=True)
        if request.path.startswith('/api/'):
            return jsonify({'success': False, 'error': 'Internal server error'}), 500
        return render_template('error.html', message='Something went wrong, please try again later.'), 500

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    @app.route('/')
    def index():
        if current_uid():
            return redirect(url_for('dashboard'))
        return redirect(url_for('login'))

    @app.route('/login', methods=['GET', 'POST'])
    def login():
        if current_uid():
            return redirect(url_for('dashboard'))

        if request.method == 'GET':
            return render_template('login.html', error=None, email='')

        email = request.form.get('email', '')
        try:
            user = auth.login(email, request.form.get('password', ''))
        except AuthError as e:
            return render_template('login.html', error=e.message, email=email), 401

        start_session(user)
        return redirect(url_for('dashboard'))

    @app.route('/signup', methods=['GET', 'POST'])
    def signup():
        if current_uid():
            return redirect(url_for('dashboard'))

        if request.method == 'GET':
            return render_template('signup.html', error=None, email='')

        email = request.form.get('email', '')
        try:
            user = auth.signup(email, request.form.get('password', ''), request.form.get('confirm_password', ''))
        except AuthError as e:
            return render_template('signup.html', error=e.message, email=email), 400

        start_session(user)
        flash('Account created successfully! You are now logged in.')
        return redirect(url_for('dashboard'))

    @app.route('/logout')
    def logout():
        session.clear()
        return redirect(url_for('login'))

    @app.route('/dashboard')
    @login_required
    def dashboard():
        loads = [serialize_load(d) for d in store.list_loads(current_uid())]
        return render_template('dashboard.html',
                               email=session.get('email'),
                               loads=loads,
                               poll_interval=settings['POLL_INTERVAL_SECONDS'],
                               default_limit=settings['DEFAULT_PERMISSIBLE_LIMIT_W'],
                               control_backend=controller.name)

    @app.route('/loads')
    @login_required
    def loads_page():
        uid = current_uid()
        loads = [serialize_load(d) for d in store.list_loads(uid)]
        return render_template('loads.html', loads=loads, available_fields=store.available_fields(uid))

    @app.route('/add-load', methods=['GET', 'POST'])
    @login_required
    def add_load():
        uid = current_uid()
        if request.method == 'GET':
            return render_template('add_load.html', error=None, name='',
                                   available_fields=store.available_fields(uid))

        name = request.form.get('name', '')
        try:
            store.add_load(uid, name, request.form.get('field'))
        except LoadError as e:
            return render_template('add_load.html', error=e.message, name=name,
                                   available_fields=store.available_fields(uid)), e.status
        return redirect(url_for('dashboard'))

    # ------------------------------------------------------------------
    # JSON API
    # ------------------------------------------------------------------

    @app.route('/api/live')
    @login_required
    def api_live():
        """Latest telemetry with readings mapped onto the user's loads."""
        snapshot = poller.latest()
        if snapshot is None:
            snapshot = poller.poll_once()
        if snapshot is None:
            error = poller.status().get('last_error') or 'Telemetry not available'
            return jsonify({'success': False, 'error': error}), 502

        loads = [serialize_load(d) for d in store.list_loads(current_uid())]
        mapped = map_loads(loads, snapshot, tariff)
        return jsonify({
            'success': True,
            'telemetry': snapshot.to_dict(),
            'loads': mapped['loads'],
            'totals': mapped['totals'],
        })

    @app.route('/api/limit', methods=['POST'])
    @login_required
    def api_limit():
        """Write the global permissible limit back to the feed (field 4)."""
        data = _json_body()
        try:
            limit = validate_limit(data.get('limit'))
        except ValueError as e:
            return jsonify({'success': False, 'error': str(e)}), 400

        try:
            entry_id = telemetry_client.update_limit(limit)
        except TelemetryError as e:
            logger.error(f"Error updating permissible limit: {e}")
            return jsonify({'success': False, 'error': str(e)}), 502

        logger.info(f"User {session.get('email')} set permissible limit to {limit} W")
        return jsonify({'success': True, 'limit': limit, 'field': LIMIT_FIELD, 'entry_id': entry_id})

    @app.route('/api/loads', methods=['GET'])
    @login_required
    def api_list_loads():
        uid = current_uid()
        return jsonify({
            'success': True,
            'loads': [serialize_load(d) for d in store.list_loads(uid)],
            'available_fields': store.available_fields(uid),
        })

    @app.route('/api/loads', methods=['POST'])
    @login_required
    def api_add_load():
        data = _json_body()
        doc = store.add_load(current_uid(), data.get('name'), data.get('field'))
        return jsonify({'success': True, 'load': serialize_load(doc)}), 201

    @app.route('/api/loads/<load_id>', methods=['PUT'])
    @login_required
    def api_update_load(load_id):
        data = _json_body()
        if 'name' not in data and 'field' not in data:
            return jsonify({'success': False, 'error': 'Nothing to update'}), 400
        doc = store.update_load(current_uid(), load_id, name=data.get('name'), field_no=data.get('field'))
        return jsonify({'success': True, 'load': serialize_load(doc)})

    @app.route('/api/loads/<load_id>', methods=['DELETE'])
    @login_required
    def api_delete_load(load_id):
        if store.delete_load(current_uid(), load_id):
            return jsonify({'success': True, 'message': 'Load deleted successfully'})
        return jsonify({'success': False, 'error': 'Load not found'}), 404

    @app.route('/api/loads/<load_id>/command', methods=['POST'])
    @login_required
    def api_command(load_id):
        data = _json_body()
        try:
            doc = send_command(store, controller, current_uid(), load_id, data.get('command'))
        except ControllerError as e:
            logger.error(f"Error switching load {load_id}: {e}")
            return jsonify({'success': False, 'error': str(e)}), 502
        return jsonify({'success': True, 'load': serialize_load(doc)})

    @app.route('/health/json')
    def health_json():
        """Health check endpoint (JSON format for monitoring tools)"""
        mongo_ok = store.ping()
        try:
            load_count = store.count_loads() if mongo_ok else None
        except PyMongoError:
            load_count = None

        return jsonify({
            'status': 'healthy' if mongo_ok else 'degraded',
            'mongodb': 'connected' if mongo_ok else 'disconnected',
            'telemetry': poller.status(),
            'controller': controller.name,
            'load_count': load_count,
            'timestamp': datetime.now().isoformat()
        }), 200

    return app


if __name__ == '__main__':
    app = create_app()
    app.extensions['powerpal']['poller'].start()
    # Disable the reloader so the poller thread is started only once
    app.run(host=config.APP_HOST, port=config.APP_PORT, debug=False, use_reloader=False)
