#!/usr/bin/env python
"""Smoke test for a running storefront API (sign-up, CSRF, cart, sign-out)"""

import os
import uuid

import requests

API_URL = os.getenv("SHOPGUARD_API_URL", "http://localhost:8000")
EMAIL = os.getenv("SMOKE_EMAIL", f"smoke-{uuid.uuid4().hex[:8]}@example.com")
PASSWORD = os.getenv("SMOKE_PASSWORD", "Sm0ke!Test#2024")

print("🔐 Storefront API smoke test")
print(f"📍 API URL: {API_URL}")

http = requests.Session()

# 1. Health check
print("\n1️⃣ Health check...")
response = http.get(f"{API_URL}/health")
print(f"   Status: {response.status_code} {response.json()}")

# 2. Mutations without a session are rejected
print("\n2️⃣ Cart mutation without session...")
response = http.post(f"{API_URL}/cart", json={"product_id": "p-1"})
if response.status_code == 401:
    print(f"   ✅ Correctly rejected: {response.json()['detail']}")
else:
    print(f"   ❌ Should have been rejected! ({response.status_code})")

# 3. Sign up (or sign in when the account already exists)
print("\n3️⃣ Sign-up...")
response = http.post(f"{API_URL}/auth/sign_up", json={"email": EMAIL, "password": PASSWORD})
if response.status_code == 409:
    response = http.post(f"{API_URL}/auth/sign_in", json={"email": EMAIL, "password": PASSWORD})
print(f"   Status: {response.status_code}")
csrf = response.headers.get("X-CSRF-Token", "")
print(f"   CSRF token: {csrf[:8]}...")

# 4. Cart mutation with a wrong CSRF token
print("\n4️⃣ Cart mutation with wrong CSRF token...")
response = http.post(f"{API_URL}/cart", json={"product_id": "p-1"}, headers={"X-CSRF-Token": "wrong"})
if response.status_code == 403:
    print("   ✅ Correctly rejected")
else:
    print(f"   ❌ Should have been rejected! ({response.status_code})")

# 5. Cart mutation with the right token
print("\n5️⃣ Cart mutation with CSRF token...")
response = http.post(f"{API_URL}/cart", json={"product_id": "p-1"}, headers={"X-CSRF-Token": csrf})
print(f"   Status: {response.status_code}")
if response.ok:
    print(f"   ✅ Cart now holds {response.json()['total_items']} items")
    csrf = response.headers.get("X-CSRF-Token", csrf)

# 6. Sign out
print("\n6️⃣ Sign-out...")
response = http.post(f"{API_URL}/auth/sign_out", headers={"X-CSRF-Token": csrf})
print(f"   Status: {response.status_code}")

print("\n✅ Smoke test complete!")
