#!/usr/bin/env python3
"""
Populate a development database with demo staff, patients and prescriptions.

Goes through the same service functions as the API, so every generated
record passes the normal validation rules.
"""

import random
from datetime import timedelta

from faker import Faker

from optica.config import get_db_uri
from optica.database import create_schema, init_engine, init_session_factory
from optica.identity import create_user, find_user_by_email
from optica.patients import create_patient
from optica.prescriptions import create_prescription

# --------------------------------------------------------------------
# CONFIG
# --------------------------------------------------------------------
DEMO_PASSWORD = "password123"

STAFF = [
    ("admin@optica.com", "admin"),
    ("ventas1@optica.com", "sales"),
    ("ventas2@optica.com", "sales"),
]

PATIENTS_PER_SALES_USER = 12
PRESCRIPTIONS_PER_PATIENT = (0, 3)  # min, max

LENS_TYPES = ["Single Vision", "Bifocal", "Progressive", "Reading"]
LENS_MATERIALS = ["CR-39", "Polycarbonate", "Trivex", "High-index"]
COATINGS = ["Anti-reflective", "UV Protection", "Blue Light Filter", "Scratch Resistant", "Hydrophobic"]
FRAME_BRANDS = ["Ray-Ban", "Oakley", "Persol", "Vogue", "Carrera"]
FRAME_STYLES = ["Full Rim", "Semi-Rimless", "Rimless", "Aviator", "Cat Eye"]
STATUSES = ["pending", "completed", "delivered", "cancelled"]
PROVINCES = ["Madrid", "Barcelona", "Valencia", "Sevilla", "Vizcaya", "Málaga"]

# --------------------------------------------------------------------
# SETUP
# --------------------------------------------------------------------
fake = Faker("es_ES")
random.seed(42)
Faker.seed(42)


def quarter_step(low, high):
    """Random optical power in 0.25 steps."""
    return round(random.randint(int(low * 4), int(high * 4)) / 4, 2)


def fake_patient_attrs(used_dnis):
    dni = fake.unique.numerify("########")
    while dni in used_dnis:
        dni = fake.unique.numerify("########")
    used_dnis.add(dni)
    return {
        "first_name": fake.first_name()[:50],
        "last_name": fake.last_name()[:50],
        "dni": dni,
        "email": fake.email(),
        "phone": fake.numerify("6########"),
        "address": fake.street_address(),
        "city": fake.city(),
        "state": random.choice(PROVINCES),
        "zip_code": fake.postcode(),
        "birth_date": fake.date_of_birth(minimum_age=6, maximum_age=90).isoformat(),
        "active": random.random() > 0.15,
        "notes": fake.sentence() if random.random() < 0.3 else None,
    }


def fake_eye(eye_type):
    return {
        "eye_type": eye_type,
        "sphere": quarter_step(-6, 4),
        "cylinder": quarter_step(-3, 0),
        "axis": random.randint(0, 180),
        "add": quarter_step(0, 3) if random.random() < 0.4 else None,
        "dnp": round(random.uniform(28, 36), 1),
        "height": round(random.uniform(16, 24), 1),
    }


def fake_lens(eye_type):
    return {
        "eye_type": eye_type,
        "lens_type": random.choice(LENS_TYPES),
        "material": random.choice(LENS_MATERIALS),
        "coatings": random.sample(COATINGS, k=random.randint(0, 3)),
        "index": random.choice([1.5, 1.59, 1.67, 1.74]),
        "photochromic": random.random() < 0.2,
        "progressive": random.random() < 0.25,
    }


def fake_prescription(order_seq):
    exam = fake.date_between(start_date="-2y", end_date="today")
    total = round(random.uniform(80, 900), 2)
    both = random.random() < 0.2
    return {
        "exam_date": exam.isoformat(),
        "observations": fake.sentence(),
        "order_number": f"ORD-{order_seq:06d}",
        "total_cost": total,
        "deposit_paid": round(total * random.choice([0, 0.3, 0.5, 1]), 2),
        "expected_delivery_date": (exam + timedelta(days=random.randint(5, 20))).isoformat(),
        "status": random.choice(STATUSES),
        "distance_va_od": round(random.uniform(0.5, 1.0), 2),
        "distance_va_os": round(random.uniform(0.5, 1.0), 2),
        "prescription_eyes_attributes": [fake_eye("OD"), fake_eye("OS")],
        "lenses_attributes": [fake_lens("Both")] if both else [fake_lens("OD"), fake_lens("OS")],
        "frame_attributes": {
            "brand": random.choice(FRAME_BRANDS),
            "model": fake.bothify("??-####").upper(),
            "style": random.choice(FRAME_STYLES),
            "color": fake.color_name(),
            "lens_width": random.randint(48, 56),
            "bridge_size": random.randint(16, 21),
            "temple_length": random.choice([135, 140, 145]),
            "frame_cost": round(random.uniform(40, 300), 2),
        },
    }


def main():
    print("=" * 60)
    print("Optica Manager – demo data")
    print("=" * 60)

    engine = init_engine(get_db_uri())
    create_schema(engine)
    session = init_session_factory(engine)()

    users = []
    for email, role in STAFF:
        user = find_user_by_email(session, email) or create_user(session, email, DEMO_PASSWORD, role)
        users.append(user)
        print(f"[seed] user {user.email} ({user.role})")

    used_dnis = set()
    order_seq = 1
    n_patients = n_prescriptions = 0
    for user in users:
        if user.role != "sales":
            continue
        for _ in range(PATIENTS_PER_SALES_USER):
            patient = create_patient(session, user, fake_patient_attrs(used_dnis))
            n_patients += 1
            for _ in range(random.randint(*PRESCRIPTIONS_PER_PATIENT)):
                create_prescription(session, patient, user, fake_prescription(order_seq))
                order_seq += 1
                n_prescriptions += 1

    session.close()
    print(f"[seed] {n_patients} patients, {n_prescriptions} prescriptions")
    print(f"[seed] all demo accounts use password: {DEMO_PASSWORD}")
    print("=" * 60)


if __name__ == "__main__":
    main()
