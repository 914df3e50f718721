from sqlalchemy import select

from settlement.models import Appointment


def find_appointment(session, appointment_id, salon_id, for_update=False):
    """Tenant-scoped lookup; None when missing or owned by another salon."""
    query = select(Appointment).where(
        Appointment.id == appointment_id,
        Appointment.salon_id == salon_id,
    )
    if for_update:
        # Serializes payment attempts for the same appointment
        query = query.with_for_update()
    return session.scalars(query).first()
