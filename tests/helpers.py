"""Plain helpers shared by the API tests."""
import re

PASSWORD = "Secret123"


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def login(client, email="user@example.com", password=PASSWORD):
    return client.post("/login", json={"email": email, "password": password})


def last_code(messages):
    """Six-digit code from the newest captured email."""
    return re.search(r"code is: (\d{6})", messages[-1].body).group(1)
