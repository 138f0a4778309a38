import json

import pytest

import media


@pytest.fixture
def uploads(monkeypatch):
    uploaded = []

    def fake_upload(file, folder="products"):
        uploaded.append(folder)
        return f"https://cdn.example/{folder}/{len(uploaded)}.jpg"

    monkeypatch.setattr(media, "upload_image", fake_upload)
    return uploaded


def test_first_read_creates_defaults(client, db):
    settings = client.get("/api/settings").json()["settings"]
    assert settings["currency"] == {"name": "XAF", "sign": "FCFA"}
    assert settings["images"] == {"hero": [], "banner": ""}
    assert settings["legal"] == {"privacy_policy": "", "terms_and_conditions": ""}
    assert db["settings"].count_documents({}) == 1

    client.get("/api/settings")
    assert db["settings"].count_documents({}) == 1


def test_older_document_gets_missing_sections(client, db):
    db["settings"].insert_one({"currency": {"name": "NGN", "sign": "₦"}, "text": {"hero": "Hello"}})
    settings = client.get("/api/settings").json()["settings"]
    assert settings["currency"]["name"] == "NGN"
    assert settings["text"] == {"hero": "Hello", "banner": ""}
    assert settings["legal"]["privacy_policy"] == ""


def test_update_settings(client, super_admin, uploads):
    _, headers = super_admin
    data = {
        "text": json.dumps({"hero": "New season", "banner": "Free delivery in Douala"}),
        "legal": json.dumps({"privacy_policy": "We keep your data safe."}),
        "hero_link": json.dumps({"category": "Women", "subcategory": "Dresses"}),
        "notification_email": "Orders@Example.com",
    }
    files = [
        ("hero", ("one.jpg", b"img", "image/jpeg")),
        ("hero", ("two.jpg", b"img", "image/jpeg")),
        ("banner", ("banner.jpg", b"img", "image/jpeg")),
    ]
    res = client.put("/api/settings", data=data, files=files, headers=headers)
    assert res.status_code == 200, res.text

    settings = res.json()["settings"]
    assert settings["text"]["hero"] == "New season"
    assert settings["legal"] == {"privacy_policy": "We keep your data safe.", "terms_and_conditions": ""}
    assert settings["hero_link"]["subcategory"] == "Dresses"
    assert settings["notification_email"] == "Orders@example.com"
    assert len(settings["images"]["hero"]) == 2
    assert settings["images"]["banner"].startswith("https://cdn.example/settings/")
    assert uploads == ["settings"] * 3

    legal = client.get("/api/settings/legal").json()["legal"]
    assert legal["privacy_policy"] == "We keep your data safe."


@pytest.mark.parametrize("data", [
    {"text": "{not json"},
    {"currency": json.dumps({"name": ["XAF"]})},
    {"notification_email": "not-an-email"},
    {},
])
def test_update_settings_rejects_bad_forms(client, super_admin, uploads, data):
    _, headers = super_admin
    assert client.put("/api/settings", data=data, headers=headers).status_code == 400


def test_settings_require_permission(client, assistant, user):
    _, headers = assistant
    form = {"text": json.dumps({"hero": "x"})}
    assert client.put("/api/settings", data=form, headers=headers).status_code == 403
    _, user_headers = user
    assert client.put("/api/settings", data=form, headers=user_headers).status_code == 401


def test_banner_link(client, super_admin):
    _, headers = super_admin
    res = client.put("/api/settings/banner-link", json={"link_type": "product", "product_id": "p1",
                                                         "category": "Women"}, headers=headers)
    assert res.json()["settings"]["banner_link"] == {
        "product_id": "p1", "category": None, "subcategory": None, "subsubcategory": None}

    res = client.put("/api/settings/banner-link", json={"link_type": "category", "category": "Men"},
                     headers=headers)
    assert res.json()["settings"]["banner_link"]["category"] == "Men"
    assert res.json()["settings"]["banner_link"]["product_id"] is None

    res = client.put("/api/settings/banner-link", json={"link_type": "category"}, headers=headers)
    assert res.status_code == 400


def test_legal_before_any_settings(client):
    assert client.get("/api/settings/legal").json()["legal"] == {"privacy_policy": "", "terms_and_conditions": ""}
