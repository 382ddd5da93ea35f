#!/usr/bin/env python3
"""
Ward AQI API Smoke Script
-------------------------
Exercises the endpoints of a running backend (uvicorn wardaqi.main:app).
"""

import requests
import time
import sys

# API Configuration
BASE_URL = "http://localhost:8000"
API_BASE_URL = f"{BASE_URL}/api"
# Generation can take a while on a cold narrative cache
REPORT_TIMEOUT = 60

# Colors for terminal output
class Colors:
    GREEN = "\033[92m"
    RED = "\033[91m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    BOLD = "\033[1m"
    END = "\033[0m"

def print_header(message):
    """Print a formatted header"""
    print(f"\n{Colors.BOLD}{Colors.BLUE}{'=' * 80}{Colors.END}")
    print(f"{Colors.BOLD}{Colors.BLUE}  {message}{Colors.END}")
    print(f"{Colors.BOLD}{Colors.BLUE}{'=' * 80}{Colors.END}\n")

def print_success(message):
    """Print a success message"""
    print(f"{Colors.GREEN}✓ {message}{Colors.END}")

def print_error(message):
    """Print an error message"""
    print(f"{Colors.RED}✗ {message}{Colors.END}")

def print_info(message):
    """Print an info message"""
    print(f"{Colors.YELLOW}• {message}{Colors.END}")

def check_root_endpoint():
    """Check the root endpoint"""
    print_header("Checking Root Endpoint")

    try:
        response = requests.get(f"{BASE_URL}/")
        if response.status_code == 200:
            data = response.json()
            print_success(f"Root endpoint is working. Message: {data['message']}")
            return True
        print_error(f"Root endpoint failed with status code: {response.status_code}")
        return False
    except requests.exceptions.RequestException as e:
        print_error(f"Connection error: {e}")
        return False

def check_health():
    """Check the health endpoint"""
    print_header("Checking Health Endpoint")

    try:
        response = requests.get(f"{API_BASE_URL}/health")
        if response.status_code != 200:
            print_error(f"Health endpoint failed with status code: {response.status_code}")
            return False
        data = response.json()
        print_info(f"Status: {data['status']}, InfluxDB: {data['influxdb']}")
        print_success("Health endpoint responded")
        return True
    except requests.exceptions.RequestException as e:
        print_error(f"Connection error: {e}")
        return False

def check_wards():
    """Check the ward list endpoint; returns the first ward id or None"""
    print_header("Checking Ward List")

    try:
        response = requests.get(f"{API_BASE_URL}/wards")
        if response.status_code != 200:
            print_error(f"Ward list failed with status code: {response.status_code}")
            return None
        wards = response.json()
        if not wards:
            print_error("Ward list is empty")
            return None
        print_success(f"Retrieved {len(wards)} wards")
        for ward in wards[:3]:
            print_info(f"{ward['ward_id']}: {ward['ward_name']}")
        return wards[0]["ward_id"]
    except requests.exceptions.RequestException as e:
        print_error(f"Connection error: {e}")
        return None

def check_overview():
    """Check the city-wide overview lists every ward"""
    print_header("Checking City Overview")

    try:
        response = requests.get(f"{API_BASE_URL}/wards/overview", timeout=REPORT_TIMEOUT)
        if response.status_code != 200:
            print_error(f"Overview failed with status code: {response.status_code}")
            return False
        entries = response.json()
        with_index = [e for e in entries if e["aqi"] is not None]
        print_success(f"Overview covers {len(entries)} wards, {len(with_index)} with an index")
        for entry in sorted(with_index, key=lambda e: e["aqi"], reverse=True)[:3]:
            print_info(f"{entry['ward_name']}: AQI {entry['aqi']} ({entry['aqi_category']['level']}, {entry['source']})")
        return bool(entries)
    except requests.exceptions.RequestException as e:
        print_error(f"Connection error: {e}")
        return False

def check_ward_analysis(ward_id=None):
    """Check a full ward report, then that a repeat request is served from cache"""
    print_header("Checking Ward Analysis")

    ward_id = ward_id or check_wards()
    if not ward_id:
        print_error("No ward id available")
        return False

    try:
        started = time.time()
        response = requests.get(f"{API_BASE_URL}/ward-analysis/{ward_id}", timeout=REPORT_TIMEOUT)
        first_elapsed = time.time() - started
        if response.status_code != 200:
            print_error(f"Ward analysis failed with status code: {response.status_code}: {response.text[:200]}")
            return False

        data = response.json()
        missing = [key for key in ("success", "ward", "ward_id", "current_aqi", "cigarettes_count",
                                   "raw_pollutants", "history_24h", "forecast_24h", "analysis") if key not in data]
        if missing:
            print_error(f"Response is missing keys: {missing}")
            return False

        print_success(f"{data['ward']} ({data['ward_id']}): AQI {data['current_aqi']} ({data['aqi_category']['level']}), "
                      f"{data['cigarettes_count']} cigarettes/day")
        print_info(f"History points: {len(data['history_24h'])}, forecast points: {len(data['forecast_24h'])}")
        if data.get("unavailable_sources"):
            print_info(f"Unavailable sources: {', '.join(data['unavailable_sources'])}")
        if data["analysis"].get("isOfflineData"):
            print_info("Narrative served from offline cache")
        print_info(f"First request took {first_elapsed:.2f}s")

        started = time.time()
        repeat = requests.get(f"{API_BASE_URL}/ward-analysis/{ward_id}", timeout=REPORT_TIMEOUT)
        print_info(f"Repeat request took {time.time() - started:.2f}s")
        if repeat.status_code == 200 and repeat.json() == data:
            print_success("Repeat request returned the cached report")
        else:
            print_info("Repeat request differed (cache may have expired)")
        return True
    except requests.exceptions.RequestException as e:
        print_error(f"Connection error: {e}")
        return False

def check_unknown_ward():
    """An unknown ward must produce a 404 with success false"""
    print_header("Checking Unknown Ward")

    try:
        response = requests.get(f"{API_BASE_URL}/ward-analysis/NO-SUCH-WARD")
        data = response.json()
        if response.status_code == 404 and data.get("success") is False:
            print_success(f"Unknown ward rejected: {data['message']}")
            return True
        print_error(f"Unexpected response {response.status_code}: {data}")
        return False
    except requests.exceptions.RequestException as e:
        print_error(f"Connection error: {e}")
        return False

def check_refresh_slot(slot=0):
    """Queue a bulk refresh slot"""
    print_header(f"Checking Refresh Slot {slot}")

    try:
        response = requests.post(f"{API_BASE_URL}/refresh/slots/{slot}")
        if response.status_code == 202:
            data = response.json()
            print_success(f"Queued segment start={data['start']} count={data['count']}")
            return True
        print_error(f"Refresh enqueue failed with status code: {response.status_code}: {response.text[:200]}")
        return False
    except requests.exceptions.RequestException as e:
        print_error(f"Connection error: {e}")
        return False

def run_all_checks():
    """Run all API checks"""
    print_header("RUNNING ALL API CHECKS")

    checks = [
        ("Root Endpoint", check_root_endpoint),
        ("Health", check_health),
        ("City Overview", check_overview),
        ("Ward Analysis", check_ward_analysis),
        ("Unknown Ward", check_unknown_ward),
        ("Refresh Slot", check_refresh_slot),
    ]

    results = []

    for name, check_func in checks:
        print_header(f"RUNNING: {name}")
        try:
            success = check_func()
            results.append((name, bool(success)))
        except Exception as e:
            print_error(f"Uncaught exception in {name} check: {e}")
            results.append((name, False))

    # Print summary
    print_header("CHECK SUMMARY")

    success_count = 0
    for name, success in results:
        if success:
            print_success(f"{name}: PASSED")
            success_count += 1
        else:
            print_error(f"{name}: FAILED")

    success_rate = (success_count / len(results)) * 100 if results else 0
    print(f"\n{Colors.BOLD}Checks passed: {success_count}/{len(results)} ({success_rate:.1f}%){Colors.END}")

    return success_count == len(results)

if __name__ == "__main__":
    # Check if a specific check is requested
    if len(sys.argv) > 1:
        check_name = sys.argv[1].lower()

        if check_name == "root":
            check_root_endpoint()
        elif check_name == "health":
            check_health()
        elif check_name == "wards":
            check_wards()
        elif check_name == "overview":
            check_overview()
        elif check_name == "ward":
            check_ward_analysis(sys.argv[2] if len(sys.argv) > 2 else None)
        elif check_name == "unknown":
            check_unknown_ward()
        elif check_name == "refresh":
            check_refresh_slot(int(sys.argv[2]) if len(sys.argv) > 2 else 0)
        else:
            print_error(f"Unknown check: {check_name}")
            print_info("Available checks: root, health, wards, overview, ward [ward_id], unknown, refresh [slot]")
    else:
        sys.exit(0 if run_all_checks() else 1)
