import requests
import time

API_BASE = "http://localhost:8001/api/backjob"

STATUS_NAMES = {0: "started", 1: "in progress", 2: "completed", 3: "failed"}


def run_countdown(steps=5, interval=1.0, delay=0):
    # 1. Start job
    print(f"📤 Starting countdown of {steps} steps (delay {delay}s)...")
    resp = requests.post(f"{API_BASE}/jobs", json={
        "route": "countdown",
        "params": {"steps": steps, "interval": interval},
        "delay": delay,
    })

    if resp.status_code != 201:
        print(f"❌ Failed to start: {resp.text}")
        return

    job_id = resp.json()["job_id"]
    print(f"✅ Job created: {job_id}")

    # 2. Poll until it completes or fails
    while True:
        status_resp = requests.get(f"{API_BASE}/jobs/{job_id}").json()
        status = status_resp["status"]
        progress = status_resp["progress"]

        print(f"⏳ Status: {STATUS_NAMES.get(status, status)} ({progress}%)")

        if status == 2:
            break
        if status == 3:
            print(f"❌ Job failed: {status_resp.get('status_text')}")
            return

        time.sleep(1)

    print(f"🎉 Success! {status_resp.get('status_text')}")


if __name__ == "__main__":
    # Example usage (server must be running: python main.py)
    # run_countdown(steps=3, delay=2)
    print("Tip: Call run_countdown(steps=3) to test.")
