import logging
import os
from functools import wraps
import secrets
from flask import Flask, request, g, jsonify
from flask_debugtoolbar import DebugToolbarExtension
from google.auth.exceptions import GoogleAuthError
from clinic_booking.booking import database, error_utils, notifications, gmail
from clinic_booking.booking.appointments import AppointmentService
from clinic_booking.booking.booking_utils import DEFAULT_TIMEZONE, get_timezone
from clinic_booking.booking.models import ROLES, Requester
from clinic_booking.booking.schedule import ScheduleService
logger = logging.getLogger(__name__)

STATUS_CODES = {
    error_utils.ValidationError: 400,
    error_utils.Forbidden: 403,
    error_utils.NotFound: 404,
    error_utils.Conflict: 409,
}


def create_app(config=None):
    app = Flask(__name__)
    app.secret_key = secrets.token_hex(32) #256 bit
    app.config['SECRET_KEY'] = app.secret_key
    app.config['CLINIC_TIMEZONE'] = os.environ.get('CLINIC_TIMEZONE', DEFAULT_TIMEZONE)
    # Callable returning a persistence object for the current request
    app.config['PERSISTENCE_FACTORY'] = database.DatabasePersistence
    app.config['NOTIFIER'] = None
    # Callable returning the current clinic-local datetime, None for the real clock
    app.config['CLOCK'] = None
    if not os.environ.get('FLASK_ENV') == 'production':
        app.config["DEBUG_TB_INTERCEPT_REDIRECTS"] = False  # Prevents redirect issues
    if config:
        app.config.update(config)
    # Fail at start-up rather than on the first request
    get_timezone(app.config['CLINIC_TIMEZONE'])
    return app

app = create_app()
# Set to make Flask debug toolbar work
if not os.environ.get('FLASK_ENV') == 'production':
    app.debug=True


def get_notifier():
    """
    Sends through Gmail when a service account is configured and loads, otherwise only logs notifications.
    Built once per app and reused.
    """
    if app.config.get('NOTIFIER') is None:
        notifier = None
        if os.getenv('SERVICE_ACCOUNT_FILE'):
            try:
                notifier = gmail.GmailNotifier()
            except (OSError, ValueError, GoogleAuthError) as e:
                logger.error(f"Gmail notifier unavailable, logging notifications instead: {e}")
        app.config['NOTIFIER'] = notifier or notifications.LogNotifier()
    return app.config['NOTIFIER']


# Use decorator to create g.db instance within request context window for functions that require it to conserve resources and prevent N +1 instances
def instantiate_database(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.db = app.config['PERSISTENCE_FACTORY']()
        return f(*args, **kwargs)
    return decorated_function


# Identity is established upstream by the auth layer, which forwards it in these headers
def require_requester(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = request.headers.get('X-User-Id', '')
        role = request.headers.get('X-User-Role', '')
        if not user_id.isdigit() or role not in ROLES:
            return jsonify({"error": "Authentication required"}), 401
        g.requester = Requester(id=int(user_id), role=role)
        return f(*args, **kwargs)
    return decorated_function


def schedule_service():
    return ScheduleService(g.db, get_notifier(), app.config['CLINIC_TIMEZONE'], app.config['CLOCK'])


def appointment_service():
    return AppointmentService(g.db, get_notifier(), app.config['CLINIC_TIMEZONE'], app.config['CLOCK'])


def json_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise error_utils.ValidationError("Request body must be a JSON object")
    return body


# Schedules

@app.route("/schedules", methods=['PUT'])
@require_requester
@instantiate_database
def save_schedule():
    update = schedule_service().save_window(json_body(), g.requester)
    return jsonify(update.to_dict()), 200


@app.route("/schedules/provider/<provider_id>", methods=['GET'])
@require_requester
@instantiate_database
def get_provider_schedule(provider_id):
    windows = schedule_service().list_provider_schedule(provider_id, request.args.get('startDate'),
                                                        request.args.get('endDate'))
    return jsonify({"providerId": int(provider_id), "schedules": [window.to_dict() for window in windows]})


@app.route("/schedules/<year>/<month>", methods=['GET'])
@require_requester
@instantiate_database
def get_month_schedule(year, month):
    windows = schedule_service().schedules_for_month(year, month, g.requester, request.args.get('providerId'))
    return jsonify({"year": year, "month": month, "schedules": [window.to_dict() for window in windows]})


@app.route("/schedules/<provider_id>/available/<date>", methods=['GET'])
@require_requester
@instantiate_database
def get_available_slots(provider_id, date):
    return jsonify(schedule_service().available_slots(provider_id, date))


@app.route("/schedules/<provider_id>/<date>", methods=['DELETE'])
@require_requester
@instantiate_database
def delete_schedule(provider_id, date):
    schedule_service().delete_window(provider_id, date, g.requester)
    return jsonify({"message": "Schedule deleted"})


# Bookings

@app.route("/bookings", methods=['POST'])
@require_requester
@instantiate_database
def create_booking():
    booking = appointment_service().create_booking(json_body(), g.requester)
    return jsonify(booking.to_dict()), 201


@app.route("/bookings", methods=['GET'])
@require_requester
@instantiate_database
def list_bookings():
    bookings = appointment_service().list_bookings(g.requester,
                                                   provider_id=request.args.get('providerId'),
                                                   subject_id=request.args.get('subjectId'),
                                                   status=request.args.get('status'),
                                                   date_value=request.args.get('date'))
    return jsonify({"bookings": [booking.to_dict() for booking in bookings]})


@app.route("/bookings/mine", methods=['GET'])
@require_requester
@instantiate_database
def my_bookings():
    bookings = appointment_service().my_bookings(g.requester)
    return jsonify({"bookings": [booking.to_dict() for booking in bookings]})


@app.route("/bookings/<int:booking_id>", methods=['GET'])
@require_requester
@instantiate_database
def get_booking(booking_id):
    return jsonify(appointment_service().get_booking(booking_id, g.requester).to_dict())


@app.route("/bookings/<int:booking_id>/status", methods=['PATCH'])
@require_requester
@instantiate_database
def update_booking_status(booking_id):
    booking = appointment_service().change_status(booking_id, json_body().get('status'), g.requester)
    return jsonify(booking.to_dict())


@app.route("/bookings/<int:booking_id>/cancel", methods=['PUT'])
@require_requester
@instantiate_database
def cancel_booking(booking_id):
    return jsonify(appointment_service().cancel_booking(booking_id, g.requester).to_dict())


@app.route("/bookings/<int:booking_id>", methods=['DELETE'])
@require_requester
@instantiate_database
def delete_booking(booking_id):
    appointment_service().delete_booking(booking_id, g.requester)
    return jsonify({"message": "Booking deleted"})


@app.errorhandler(error_utils.BookingError)
def handle_booking_error(error):
    status = STATUS_CODES.get(type(error), 400)
    if status >= 403:
        logger.info(f"{request.method} {request.path} rejected: {error.message}")
    return jsonify(error.to_dict()), status


@app.errorhandler(404)
def error_handler(error):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(405)
def method_not_allowed(error):
    return jsonify({"error": "Method not allowed"}), 405


if __name__ == '__main__':
    # production
    if os.environ.get('FLASK_ENV') == 'production':
       app.run(debug=False)
    else:
       toolbar = DebugToolbarExtension(app)
       app.run(debug=True, port=5003)
