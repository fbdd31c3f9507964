"""
Manual smoke checks against a running Optica Manager API.
Run the API server first: python -m optica.api.app
Then run this: python smoke_api.py
"""

import json
import sys

import requests

BASE_URL = "http://localhost:8000"
API = f"{BASE_URL}/api/v1"


def banner(title):
    print("\n" + "=" * 50)
    print(f"CHECK: {title}")
    print("=" * 50)


def show(response):
    print(f"Status Code: {response.status_code}")
    if response.content:
        print(f"Response: {json.dumps(response.json(), indent=2, ensure_ascii=False)[:800]}")


def check_health():
    banner("Health Check")
    response = requests.get(f"{BASE_URL}/health")
    show(response)
    return response.status_code == 200


def check_login_invalid():
    banner("Sign in with invalid credentials")
    response = requests.post(
        f"{API}/users/sign_in",
        json={"user": {"email": "nobody@example.com", "password": "wrong"}},
    )
    show(response)
    return response.status_code == 401


def sign_in(email, password):
    banner("Sign in")
    response = requests.post(
        f"{API}/users/sign_in",
        json={"user": {"email": email, "password": password}},
    )
    show(response)
    if response.status_code == 200:
        return response.json()["data"]["token"]
    return None


def check_patients_without_token():
    banner("Patients without token")
    response = requests.get(f"{API}/patients")
    show(response)
    return response.status_code == 401


def check_dashboard(headers):
    banner("Dashboard")
    response = requests.get(f"{API}/dashboard", headers=headers)
    show(response)
    return response.status_code == 200


def check_patient_flow(headers):
    banner("Create patient, prescription and read balance")
    response = requests.post(
        f"{API}/patients",
        headers=headers,
        json={"patient": {
            "first_name": "Smoke",
            "last_name": "Check",
            "phone": "600123456",
            "dni": "99999999",
        }},
    )
    show(response)
    if response.status_code != 201:
        return False
    patient_id = response.json()["id"]

    response = requests.post(
        f"{API}/patients/{patient_id}/prescriptions",
        headers=headers,
        json={"prescription": {
            "total_cost": 500,
            "deposit_paid": 150,
            "prescription_eyes_attributes": [
                {"eye_type": "OD", "sphere": -1.25},
                {"eye_type": "OS", "sphere": -1.0},
            ],
            "lenses_attributes": [{"eye_type": "Both", "coatings": ["UV Protection"]}],
            "frame_attributes": {"brand": "Ray-Ban"},
        }},
    )
    show(response)
    ok = response.status_code == 201 and float(response.json()["balance_due"]) == 350.0

    requests.delete(f"{API}/patients/{patient_id}", headers=headers)
    return ok


def check_logout(headers):
    banner("Sign out, then reuse the token")
    response = requests.delete(f"{API}/users/sign_out", headers=headers)
    show(response)
    if response.status_code != 200:
        return False
    response = requests.get(f"{API}/current_user", headers=headers)
    show(response)
    return response.status_code == 401


def main():
    print("=" * 50)
    print("Optica Manager API smoke checks")
    print("=" * 50)
    print(f"Base URL: {BASE_URL}")
    print("Make sure the API server is running!")
    print()

    email = input("Email: ").strip()
    password = input("Password: ").strip()
    if not email or not password:
        print("ERROR: email and password are required")
        return 1

    results = {}

    try:
        results["Health Check"] = check_health()
        results["Login Invalid"] = check_login_invalid()
        results["No Token"] = check_patients_without_token()

        token = sign_in(email, password)
        if token:
            headers = {"Authorization": f"Bearer {token}"}
            results["Login Valid"] = True
            results["Dashboard"] = check_dashboard(headers)
            results["Patient Flow"] = check_patient_flow(headers)
            results["Logout"] = check_logout(headers)
        else:
            results["Login Valid"] = False
            print("\nERROR: Could not sign in. Remaining checks skipped.")

    except requests.RequestException as e:
        print(f"\n\nERROR: {e}")

    print("\n" + "=" * 50)
    print("SUMMARY")
    print("=" * 50)
    passed = sum(1 for v in results.values() if v)
    for name, result in results.items():
        status = "✓ PASS" if result else "✗ FAIL"
        print(f"{status}: {name}")
    print(f"\nTotal: {passed}/{len(results)} checks passed")
    print("=" * 50)
    return 0 if passed == len(results) else 1


if __name__ == "__main__":
    sys.exit(main())
