"""
Bundled static dataset.

Served when the database is unreachable so listing pages stay usable read-only,
and loaded into an empty database by the seed route.
"""
from datetime import datetime, timezone

CATEGORIES = [
    "All Categories",
    "Vegetables",
    "Fruits",
    "Clothing & Fabric",
    "Home & Garden",
    "Beauty & Wellness",
    "Technology",
    "Food & Beverages",
    "Crafts & Art",
]

LOCATIONS = [
    "All Areas",
    "Avondale",
    "Mbare",
    "Eastlea",
    "Borrowdale",
    "Waterfalls",
    "Kuwadzana",
    "Chitungwiza",
    "Norton",
]

PAYMENT_OPTIONS = ["Cash on Delivery", "EcoCash", "Bank Transfer", "OneMoney"]


def _date(value: str) -> datetime:
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


MOCK_USERS = [
    {
        "id": "1",
        "email": "john@customer.com",
        "name": "John Doe",
        "role": "customer",
        "avatar_url": "https://api.dicebear.com/6.x/avataaars/svg?seed=john",
        "city": "Harare",
        "area": "Avondale",
        "address": "123 Main Street",
        "created_at": _date("2024-01-15"),
    },
    {
        "id": "2",
        "email": "mary@retailer.com",
        "name": "Mary Chikara",
        "role": "retailer",
        "avatar_url": "https://api.dicebear.com/6.x/avataaars/svg?seed=mary",
        "city": "Harare",
        "area": "Mbare",
        "address": "Mbare Musika Stall 45",
        "created_at": _date("2024-01-10"),
    },
    {
        "id": "3",
        "email": "grace@service.com",
        "name": "Grace Mutindi",
        "role": "service-provider",
        "avatar_url": "https://api.dicebear.com/6.x/avataaars/svg?seed=grace",
        "city": "Harare",
        "area": "Eastlea",
        "address": "Beauty Salon Complex",
        "created_at": _date("2024-01-05"),
    },
]

MOCK_REVIEWS = [
    {
        "id": "1",
        "user_id": "1",
        "user": MOCK_USERS[0],
        "product_id": "1",
        "rating": 5,
        "comment": "Excellent quality vegetables, fresh and well-packaged!",
        "created_at": _date("2024-01-20"),
    },
    {
        "id": "2",
        "user_id": "1",
        "user": MOCK_USERS[0],
        "service_id": "1",
        "rating": 4,
        "comment": "Great hairstyling service, very professional.",
        "created_at": _date("2024-01-18"),
    },
    {
        "id": "3",
        "user_id": "1",
        "user": MOCK_USERS[0],
        "product_id": "2",
        "rating": 4,
        "comment": "Lovely colours, the fabric washes well.",
        "created_at": _date("2024-01-16"),
    },
    {
        "id": "4",
        "user_id": "1",
        "user": MOCK_USERS[0],
        "product_id": "3",
        "rating": 5,
        "comment": "Beautiful set, arrived well wrapped.",
        "created_at": _date("2024-01-14"),
    },
    {
        "id": "5",
        "user_id": "1",
        "user": MOCK_USERS[0],
        "service_id": "2",
        "rating": 5,
        "comment": "Screen replaced in under an hour.",
        "created_at": _date("2024-01-12"),
    },
]

MOCK_PRODUCTS = [
    {
        "id": "1",
        "name": "Fresh Tomatoes",
        "description": "Farm-fresh tomatoes from Mazowe. Perfect for cooking and salads.",
        "price": 3.5,
        "images": [
            "https://images.unsplash.com/photo-1546470427-e5ac5d3ff1ce?w=400",
            "https://images.unsplash.com/photo-1592841200221-a6898f307baa?w=400",
        ],
        "category": "Vegetables",
        "colors": ["Red", "Green"],
        "sizes": ["1kg", "2kg", "5kg"],
        "availability": 50,
        "seller_id": "2",
        "seller": MOCK_USERS[1],
        "delivery_time": "Same day delivery",
        "payment_options": ["Cash on Delivery", "EcoCash", "Bank Transfer"],
        "reviews": [MOCK_REVIEWS[0]],
        "promoted": True,
        "created_at": _date("2024-01-15"),
    },
    {
        "id": "2",
        "name": "Traditional Chitenge Fabric",
        "description": "Beautiful traditional African fabric perfect for dresses and wraps.",
        "price": 15.0,
        "images": [
            "https://images.unsplash.com/photo-1594736797933-d0c6ec8c75ae?w=400",
            "https://images.unsplash.com/photo-1618898227248-42c9f5d5b1b4?w=400",
        ],
        "category": "Clothing & Fabric",
        "colors": ["Blue", "Red", "Green", "Yellow"],
        "sizes": ["2 meters", "4 meters", "6 meters"],
        "availability": 25,
        "seller_id": "2",
        "seller": MOCK_USERS[1],
        "delivery_time": "1-2 days",
        "payment_options": ["Cash on Delivery", "EcoCash"],
        "reviews": [MOCK_REVIEWS[2]],
        "promoted": False,
        "created_at": _date("2024-01-12"),
    },
    {
        "id": "3",
        "name": "Handmade Pottery Set",
        "description": "Beautiful handcrafted pottery set including plates, bowls, and cups.",
        "price": 45.0,
        "images": ["https://images.unsplash.com/photo-1578662996442-48f60103fc96?w=400"],
        "category": "Home & Garden",
        "colors": ["Brown", "Black", "White"],
        "sizes": ["4-piece set", "6-piece set", "8-piece set"],
        "availability": 10,
        "seller_id": "2",
        "seller": MOCK_USERS[1],
        "delivery_time": "2-3 days",
        "payment_options": ["Bank Transfer", "Cash on Delivery"],
        "reviews": [MOCK_REVIEWS[3]],
        "promoted": True,
        "created_at": _date("2024-01-10"),
    },
]

MOCK_SERVICES = [
    {
        "id": "1",
        "name": "Hair Styling & Braiding",
        "description": "Professional hair styling, braiding, and treatment services.",
        "price": 20.0,
        "duration": 120,
        "category": "Beauty & Wellness",
        "provider_id": "3",
        "provider": MOCK_USERS[2],
        "availability": [
            {"date": "2024-02-01", "time_slots": ["09:00", "11:00", "14:00", "16:00"]},
            {"date": "2024-02-02", "time_slots": ["10:00", "13:00", "15:00"]},
        ],
        "reviews": [MOCK_REVIEWS[1]],
        "created_at": _date("2024-01-08"),
    },
    {
        "id": "2",
        "name": "Mobile Phone Repair",
        "description": "Quick and reliable mobile phone repair services. Screen replacement, battery, etc.",
        "price": 25.0,
        "duration": 60,
        "category": "Technology",
        "provider_id": "3",
        "provider": MOCK_USERS[2],
        "availability": [
            {"date": "2024-02-01", "time_slots": ["08:00", "10:00", "12:00", "14:00", "16:00"]},
        ],
        "reviews": [MOCK_REVIEWS[4]],
        "created_at": _date("2024-01-06"),
    },
]


def _rating(reviews) -> float:
    if not reviews:
        return 0.0
    return round(sum(r["rating"] for r in reviews) / len(reviews), 1)


# same derivation as rows read back from the database
for _row in MOCK_PRODUCTS + MOCK_SERVICES:
    _row["rating"] = _rating(_row["reviews"])
