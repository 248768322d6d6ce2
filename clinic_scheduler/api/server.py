"""HTTP API for the scheduling engine.

Flask server exposing:
- Appointment booking, rescheduling, cancellation and status changes
- Provider schedules (day templates, single slots, batch edits)
- Waitlist enqueue / confirm / remove and the expiry sweep
- Day / week / month calendar projections

Run with: python -m clinic_scheduler.api.server
"""
from datetime import date
from typing import Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from pydantic import ValidationError

from clinic_scheduler import config
from clinic_scheduler.api.models import (
    ActorRequest,
    BookRequest,
    ErrorResponse,
    ExpireRequest,
    OpenDayRequest,
    RescheduleRequest,
    ScheduleBatchRequest,
    SlotPatchRequest,
    SlotRequest,
    StatusRequest,
    WaitlistRequest,
)
from clinic_scheduler.calendar_view import count_active
from clinic_scheduler.config import Settings, load_settings
from clinic_scheduler.engine import SchedulingEngine
from clinic_scheduler.errors import SchedulingError
from clinic_scheduler.logging_config import RequestIDMiddleware, get_logger, setup_structured_logging
from clinic_scheduler.models import Appointment, TimeSlot, WaitlistEntry
from clinic_scheduler.schedule_store import SYSTEM_ACTOR
from clinic_scheduler.time_windows import parse_labels

logger = get_logger(__name__)

# Error code -> HTTP status
STATUS_BY_CODE = {
    "NOT_FOUND": 404,
    "SLOT_CONFLICT": 409,
    "OVERLAP": 409,
    "DUPLICATE_ACTIVE": 409,
    "INVALID_STATE": 409,
    "INVALID_TRANSITION": 409,
    "IMMUTABLE_BOOKED_SLOT": 409,
    "SLOT_IN_USE": 409,
    "EXPIRED": 410,
    "PAST_DATE": 400,
    "OUTSIDE_HOURS": 400,
    "INVALID_PREFERENCES": 400,
}


def appointment_json(appointment: Appointment) -> dict:
    payload = appointment.model_dump(mode="json")
    payload.update(appointment.range.to_dict())
    del payload["range"]
    return payload


def slot_json(slot: TimeSlot) -> dict:
    payload = slot.model_dump(mode="json")
    payload.update(slot.range.to_dict())
    del payload["range"]
    return payload


def entry_json(entry: WaitlistEntry) -> dict:
    payload = entry.model_dump(mode="json")
    payload["offered_range"] = entry.offered_range.to_dict() if entry.offered_range else None
    return payload


def _body(model):
    return model.model_validate(request.get_json(silent=True) or {})


def _parse_date(raw: Optional[str], name: str = "date") -> date:
    if not raw:
        raise ValueError(f"{name} parameter is required (YYYY-MM-DD)")
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise ValueError(f"Invalid {name} format. Use YYYY-MM-DD")


def create_app(engine: Optional[SchedulingEngine] = None, settings: Optional[Settings] = None) -> Flask:
    """
    Build the Flask application.

    Args:
        engine: Engine to serve (tests inject one with a fixed clock)
        settings: Used to build a default engine when none is given

    Returns:
        Configured Flask app with CORS and request-id middleware
    """
    if engine is None:
        engine = SchedulingEngine(settings or load_settings())

    app = Flask(__name__)
    CORS(app)
    app.wsgi_app = RequestIDMiddleware(app.wsgi_app)
    app.config["ENGINE"] = engine

    # ===== ERROR HANDLERS =====

    @app.errorhandler(SchedulingError)
    def handle_scheduling_error(e: SchedulingError):
        status = STATUS_BY_CODE.get(e.code, 400)
        logger.info("request_rejected", code=e.code, status=status, error=e.message)
        return jsonify(ErrorResponse(**e.to_dict()).model_dump(exclude_none=True)), status

    @app.errorhandler(ValidationError)
    def handle_validation_error(e: ValidationError):
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        return jsonify(ErrorResponse(
            error="Invalid request body",
            code="VALIDATION_ERROR",
            details=errors,
        ).model_dump(exclude_none=True)), 422

    @app.errorhandler(ValueError)
    def handle_value_error(e: ValueError):
        return jsonify(ErrorResponse(error=str(e), code="BAD_REQUEST").model_dump(exclude_none=True)), 400

    # ===== GENERAL =====

    @app.route('/health', methods=['GET'])
    def health():
        """GET /health - Liveness probe."""
        return jsonify({"status": "ok", "service": "clinic-scheduler"})

    @app.route('/services', methods=['GET'])
    def get_services():
        """GET /services - List service types and their default durations."""
        return jsonify({
            "success": True,
            "services": config.SERVICES,
            "total": len(config.SERVICES)
        })

    # ===== APPOINTMENTS =====

    @app.route('/appointments', methods=['POST'])
    def book_appointment():
        """POST /appointments - Book an appointment.

        Expected JSON body:
        {
            "patient_id": "pat-001",
            "provider_id": "dr-a",
            "service_type": "srv-001",
            "date": "2024-06-10",
            "start_time": "09:00",
            "end_time": "09:30"
        }
        """
        data = _body(BookRequest)
        appointment = engine.book(
            patient_id=data.patient_id,
            provider_id=data.provider_id,
            service_type=data.service_type,
            time_range=data.to_range(engine.settings.slot_duration_minutes),
            location=data.location,
            notes=data.notes,
            actor_id=data.actor_id,
        )
        return jsonify({
            "success": True,
            "appointment": appointment_json(appointment),
            "message": f"Appointment booked! Confirmation number: {appointment.id}"
        }), 201

    @app.route('/appointments/<appointment_id>', methods=['GET'])
    def get_appointment(appointment_id):
        """GET /appointments/APPT-1001 - Get appointment by confirmation number."""
        return jsonify({
            "success": True,
            "appointment": appointment_json(engine.get_appointment(appointment_id))
        })

    @app.route('/appointments/<appointment_id>/reschedule', methods=['PUT'])
    def reschedule_appointment(appointment_id):
        """PUT /appointments/APPT-1001/reschedule - Move to a new range (and provider)."""
        data = _body(RescheduleRequest)
        appointment = engine.reschedule(
            appointment_id,
            data.to_range(),
            new_provider_id=data.provider_id,
            actor_id=data.actor_id,
        )
        return jsonify({
            "success": True,
            "appointment": appointment_json(appointment),
            "message": f"Appointment {appointment_id} rescheduled to {appointment.range}"
        })

    @app.route('/appointments/<appointment_id>/cancel', methods=['PATCH'])
    def cancel_appointment(appointment_id):
        """PATCH /appointments/APPT-1001/cancel - Cancel (status change, never deleted)."""
        data = _body(ActorRequest)
        appointment = engine.cancel(appointment_id, actor_id=data.actor_id)
        return jsonify({
            "success": True,
            "appointment": appointment_json(appointment),
            "message": f"Appointment {appointment_id} has been cancelled"
        })

    @app.route('/appointments/<appointment_id>/status', methods=['PATCH'])
    def advance_status(appointment_id):
        """PATCH /appointments/APPT-1001/status - Advance along the lifecycle."""
        data = _body(StatusRequest)
        appointment = engine.advance_status(appointment_id, data.status, actor_id=data.actor_id)
        return jsonify({"success": True, "appointment": appointment_json(appointment)})

    @app.route('/patients/<patient_id>/appointments', methods=['GET'])
    def patient_history(patient_id):
        """GET /patients/pat-001/appointments?date_from=&date_to=&provider_id="""
        date_from = request.args.get('date_from')
        date_to = request.args.get('date_to')
        history = engine.calendar.patient_history(
            patient_id,
            date_from=_parse_date(date_from, "date_from") if date_from else None,
            date_to=_parse_date(date_to, "date_to") if date_to else None,
            provider_id=request.args.get('provider_id'),
        )
        return jsonify({
            "success": True,
            "appointments": [appointment_json(a) for a in history],
            "total": len(history)
        })

    # ===== PROVIDER SCHEDULES =====

    @app.route('/providers/<provider_id>/schedule/<day>', methods=['GET'])
    def get_schedule(provider_id, day):
        """GET /providers/dr-a/schedule/2024-06-10 - All slots for the day."""
        slots = engine.get_schedule(provider_id, _parse_date(day))
        return jsonify({
            "success": True,
            "slots": [slot_json(s) for s in slots],
            "total": len(slots)
        })

    @app.route('/providers/<provider_id>/availability/<day>', methods=['GET'])
    def get_availability(provider_id, day):
        """GET /providers/dr-a/availability/2024-06-10?windows=early_morning,evening"""
        raw = request.args.get('windows')
        labels = parse_labels(raw.split(",")) if raw else []
        slots = engine.store.available_slots(provider_id, _parse_date(day), labels)
        return jsonify({
            "success": True,
            "available_slots": [slot_json(s) for s in slots],
            "total_slots": len(slots),
            "fully_booked": not slots
        })

    @app.route('/providers/<provider_id>/schedule/<day>/open', methods=['POST'])
    def open_day(provider_id, day):
        """POST /providers/dr-a/schedule/2024-06-10/open - Generate a day of slots."""
        data = _body(OpenDayRequest)
        lunch = config.lunch_break() if data.skip_lunch else None
        slots = engine.open_day(
            provider_id, _parse_date(day), data.slot_minutes, lunch, data.actor_id or SYSTEM_ACTOR
        )
        return jsonify({
            "success": True,
            "slots": [slot_json(s) for s in slots],
            "total": len(slots)
        }), 201

    @app.route('/providers/<provider_id>/schedule/<day>', methods=['PUT'])
    def commit_schedule(provider_id, day):
        """PUT /providers/dr-a/schedule/2024-06-10[?validate_only=true] - Bulk edit.

        All-or-nothing: overlapping batches are rejected before anything changes.
        """
        schedule_date = _parse_date(day)
        data = _body(ScheduleBatchRequest)
        slots = [s.to_slot(provider_id) for s in data.slots]

        if request.args.get('validate_only', '').lower() in ('1', 'true', 'yes'):
            engine.validate_schedule_batch(provider_id, schedule_date, slots)
            return jsonify({"success": True, "ok": True})

        committed = engine.commit_schedule_batch(
            provider_id, schedule_date, slots, data.actor_id or SYSTEM_ACTOR
        )
        return jsonify({
            "success": True,
            "slots": [slot_json(s) for s in committed],
            "total": len(committed)
        })

    @app.route('/providers/<provider_id>/slots', methods=['POST'])
    def add_slot(provider_id):
        """POST /providers/dr-a/slots - Add one slot."""
        data = _body(SlotRequest)
        slot = engine.add_slot(data.to_slot(provider_id), request.args.get('actor_id', SYSTEM_ACTOR))
        return jsonify({"success": True, "slot": slot_json(slot)}), 201

    @app.route('/slots/<slot_id>', methods=['PATCH'])
    def update_slot(slot_id):
        """PATCH /slots/slot-abc - Edit a slot's range, status or notes."""
        data = _body(SlotPatchRequest)
        slot = engine.update_slot(slot_id, data.to_patch(), data.actor_id or SYSTEM_ACTOR)
        return jsonify({"success": True, "slot": slot_json(slot)})

    @app.route('/slots/<slot_id>', methods=['DELETE'])
    def remove_slot(slot_id):
        """DELETE /slots/slot-abc - Remove a slot that is not booked."""
        engine.remove_slot(slot_id, request.args.get('actor_id', SYSTEM_ACTOR))
        return jsonify({"success": True, "message": f"Slot {slot_id} removed"})

    # ===== WAITLIST =====

    @app.route('/waitlist', methods=['POST'])
    def enqueue_waitlist():
        """POST /waitlist - Join the waitlist for a provider and service."""
        data = _body(WaitlistRequest)
        entry = engine.enqueue_waitlist(
            patient_id=data.patient_id,
            provider_id=data.provider_id,
            service=data.service_type,
            date_from=data.date_from,
            date_to=data.date_to,
            time_preferences=data.time_preferences,
            actor_id=data.actor_id,
        )
        return jsonify({
            "success": True,
            "position": entry.position,
            "entry": entry_json(entry),
            "message": f"Added to the waitlist at position {entry.position}"
        }), 201

    @app.route('/waitlist/<entry_id>', methods=['GET'])
    def get_waitlist_entry(entry_id):
        """GET /waitlist/wait-abc - Current state of an entry."""
        return jsonify({"success": True, "entry": entry_json(engine.waitlist.get_entry(entry_id))})

    @app.route('/waitlist/<entry_id>/confirm', methods=['POST'])
    def confirm_waitlist(entry_id):
        """POST /waitlist/wait-abc/confirm - Book the slot offered to this entry."""
        data = _body(ActorRequest)
        appointment = engine.confirm_waitlist_slot(entry_id, actor_id=data.actor_id)
        return jsonify({
            "success": True,
            "appointment": appointment_json(appointment),
            "message": f"Appointment booked! Confirmation number: {appointment.id}"
        }), 201

    @app.route('/waitlist/<entry_id>', methods=['DELETE'])
    def remove_waitlist_entry(entry_id):
        """DELETE /waitlist/wait-abc - Receptionist removal."""
        engine.remove_waitlist_entry(entry_id, actor_id=request.args.get('actor_id'))
        return jsonify({"success": True, "message": f"Waitlist entry {entry_id} removed"})

    @app.route('/waitlist/expire', methods=['POST'])
    def expire_overdue():
        """POST /waitlist/expire - Periodic sweep of overdue offers."""
        data = _body(ExpireRequest)
        report = engine.expire_overdue(data.now)
        return jsonify({
            "success": True,
            "expired_count": report.expired_count,
            "promoted_count": report.promoted_count
        })

    # ===== CALENDAR =====

    def _calendar_response(grouped):
        return jsonify({
            "success": True,
            "days": {
                day.isoformat(): [appointment_json(a) for a in items]
                for day, items in grouped.items()
            },
            "total": count_active(grouped)
        })

    def _include_cancelled() -> bool:
        return request.args.get('include_cancelled', '').lower() in ('1', 'true', 'yes')

    @app.route('/calendar/day', methods=['GET'])
    def calendar_day():
        """GET /calendar/day?date=2024-06-10&provider_id=dr-a"""
        return _calendar_response(engine.calendar.day(
            _parse_date(request.args.get('date')),
            provider_id=request.args.get('provider_id'),
            include_cancelled=_include_cancelled(),
        ))

    @app.route('/calendar/week', methods=['GET'])
    def calendar_week():
        """GET /calendar/week?date=2024-06-10&provider_id=dr-a (Monday-Sunday)"""
        return _calendar_response(engine.calendar.week(
            _parse_date(request.args.get('date')),
            provider_id=request.args.get('provider_id'),
            include_cancelled=_include_cancelled(),
        ))

    @app.route('/calendar/month', methods=['GET'])
    def calendar_month():
        """GET /calendar/month?year=2024&month=6&provider_id=dr-a"""
        try:
            year = int(request.args.get('year', ''))
            month = int(request.args.get('month', ''))
        except ValueError:
            raise ValueError("year and month parameters are required integers")
        if not 1 <= month <= 12:
            raise ValueError("month must be between 1 and 12")
        return _calendar_response(engine.calendar.month(
            year,
            month,
            provider_id=request.args.get('provider_id'),
            include_cancelled=_include_cancelled(),
        ))

    return app


def main():
    settings = load_settings()
    setup_structured_logging(settings.log_level)
    app = create_app(settings=settings)

    logger.info("api_starting", host=settings.api_host, port=settings.api_port)
    print("=" * 60)
    print("CLINIC SCHEDULER API")
    print("=" * 60)
    print(f"Running on: http://{settings.api_host}:{settings.api_port}")
    print(f"Business hours: {settings.business_hours_start.strftime('%H:%M')}"
          f"-{settings.business_hours_end.strftime('%H:%M')}")
    print("=" * 60)

    app.run(host=settings.api_host, port=settings.api_port)


if __name__ == '__main__':
    main()
