# seed_demo.py
import os

import requests

BASE_URL = os.getenv("CIRCULATION_BASE_URL", "http://localhost:5001")
SERVICE_API_KEY = os.getenv("SERVICE_API_KEY", "dev-service-key")

BOOKS = [
    {
        "isbn": "978-0132350884",
        "title": "Clean Code",
        "author": "Robert C. Martin",
        "publisher": "Prentice Hall",
        "year": 2008,
        "classification": "005.1 MAR",
        "barcodes": ["CC-001"],
    },
    {
        "isbn": "978-0201616224",
        "title": "The Pragmatic Programmer",
        "author": "Andrew Hunt, David Thomas",
        "publisher": "Addison-Wesley",
        "year": 1999,
        "classification": "005.1 HUN",
    },
    {
        "isbn": "978-0262033848",
        "title": "Introduction to Algorithms",
        "author": "Cormen, Leiserson, Rivest, Stein",
        "publisher": "MIT Press",
        "year": 2009,
        "classification": "005.1 COR",
    },
    {
        "isbn": "978-1491950357",
        "title": "Designing Data-Intensive Applications",
        "author": "Martin Kleppmann",
        "publisher": "O'Reilly Media",
        "year": 2017,
        "classification": "005.74 KLE",
    },
]


def check_service(url):
    """Hit /api/health and return True/False."""
    health_url = f"{url.rstrip('/')}/api/health"
    try:
        r = requests.get(health_url, timeout=3)
        print(f"[CHECK] {health_url} -> {r.status_code}")
        return r.ok
    except Exception as e:
        print(f"[ERROR] service not reachable at {health_url}: {e}")
        return False


def seed_books(url):
    print(f"\n== Seeding books into {url} ==")
    created = {}

    for i, book in enumerate(BOOKS, start=1):
        payload = dict(book)
        # vary copies per title to make availability more interesting
        payload.setdefault("total_copies", 1 + (i % 3))

        try:
            resp = requests.post(
                f"{url.rstrip('/')}/api/books",
                headers={"X-API-Key": SERVICE_API_KEY},
                json=payload,
                timeout=5,
            )
            print(f"  [{i:02}] {book['title']} -> {resp.status_code}")
            if resp.ok:
                created[book["title"]] = resp.json()["book_id"]
            else:
                print(f"      Body: {resp.text.strip()}")
        except Exception as e:
            print(f"  [{i:02}] {book['title']} -> FAILED: {e}")

    return created


def seed_circulation(url, book_ids):
    """Put one title on loan and queue a hold behind it."""
    print("\n== Seeding loans and holds ==")
    book_id = book_ids.get("Clean Code")
    if book_id is None:
        print("  Clean Code was not created, skipping.")
        return False

    base = url.rstrip("/")
    resp = requests.post(
        f"{base}/api/loans/checkout",
        headers={"X-API-Key": SERVICE_API_KEY, "X-Actor-Id": "seed", "X-Actor-Role": "staff"},
        json={
            "book_id": book_id,
            "borrower_identifier": "S1001",
            "borrower_name": "Alex Demo",
            "borrower_type": "student",
            "due_date": "2030-01-31",
        },
        timeout=5,
    )
    print(f"  checkout Clean Code -> {resp.status_code} {resp.text.strip()}")

    hold = requests.post(
        f"{base}/api/holds",
        headers={"X-Actor-Id": "S2002", "X-Actor-Role": "patron"},
        json={"book_id": book_id},
        timeout=5,
    )
    print(f"  hold Clean Code for S2002 -> {hold.status_code} {hold.text.strip()}")
    return resp.ok and hold.ok


def main():
    print("Checking circulation service...")
    if not check_service(BASE_URL):
        print(f"\nService is not reachable. Make sure it is running on {BASE_URL}.")
        return

    book_ids = seed_books(BASE_URL)
    seed_circulation(BASE_URL, book_ids)

    print("\nDone.")
    print("Try hitting:")
    print(f"  {BASE_URL}/api/dashboard/summary")
    print(f"  {BASE_URL}/api/loans/active")


if __name__ == "__main__":
    main()
