"""
Quick API smoke test against a running server
"""

import asyncio
import os

import httpx


async def test_api():
    """Exercise the Bear Watch endpoints"""

    base_url = os.getenv("BEARWATCH_URL", "http://localhost:8080")

    print("Testing Bear Watch API...")
    print("=" * 50)

    async with httpx.AsyncClient(timeout=60.0) as client:
        print("\n1. Health check...")
        response = await client.get(f"{base_url}/api/health")
        print(f"Status: {response.status_code}")
        print(f"Response: {response.json()}")

        print("\n2. Metrics...")
        response = await client.get(f"{base_url}/metrics")
        print(f"Status: {response.status_code}")
        print(f"Response: {response.json()}")

        print("\n3. Scan...")
        response = await client.post(f"{base_url}/api/scan", json={"location": "Akita"})
        print(f"Status: {response.status_code}")
        data = response.json()
        if response.status_code == 200:
            print(f"Hotspots: {len(data['hotspots'])} counts={data['counts']} status={data['status']}")
        else:
            print(f"Error: {data.get('detail')}")

        print("\n4. Cached sightings...")
        response = await client.get(f"{base_url}/api/sightings")
        hotspots = response.json()["hotspots"]
        print(f"Cached: {len(hotspots)}")

        print("\n5. Risk near Akita city...")
        response = await client.post(f"{base_url}/api/risk", json={"lat": 39.72, "lng": 140.10})
        print(f"Response: {response.json()}")

        print("\n6. Species advisory for Sapporo...")
        response = await client.post(f"{base_url}/api/analyze-species", json={"lat": 43.06, "lng": 141.35})
        advisory = response.json()
        print(f"{advisory.get('name')} ({advisory.get('type')}, {advisory.get('origin')})")

    print("\n" + "=" * 50)
    print("Test completed")


if __name__ == "__main__":
    asyncio.run(test_api())
