import base64

import pytest

from backend.products import STRIPE_PRODUCTS
from glowguide_client import (
    FileSessionStorage,
    GlowGuideClient,
    GlowGuideClientError,
    ImageSelectionError,
    REAL_ANALYSIS_ID_KEY,
    SessionStorage,
    TEMP_ANALYSIS_KEY,
    encode_image_file,
    format_countdown,
)
from glowguide_client import client as client_module
from conftest import TEST_IMAGE_B64, TEST_IMAGE_DATA_URL, TEST_PASSWORD


@pytest.fixture
def app_client(client, clock):
    """GlowGuideClient talking to the app in-process, sharing the frozen clock"""
    return GlowGuideClient("http://testserver", http=client, clock=clock.aware)


def test_format_countdown():
    assert format_countdown(3600) == "60:00"
    assert format_countdown(3599) == "59:59"
    assert format_countdown(65) == "01:05"
    assert format_countdown(0) == "00:00"
    assert format_countdown(-3) == "00:00"


def test_full_client_flow(app_client, fake_ai):
    result = app_client.analyze_photo(TEST_IMAGE_DATA_URL)

    assert app_client.get_temp_analysis() == result
    assert app_client.resume() == client_module.PREVIEW
    assert app_client.countdown() == "60:00"
    assert app_client.tick() == client_module.PREVIEW

    app_client.sign_up("flow@test.com", TEST_PASSWORD, "Flow")
    url = app_client.start_checkout(STRIPE_PRODUCTS[0].price_id, success_url="https://app.test/?payment_success=true")
    assert url == "https://app.test/?payment_success=true"
    assert app_client.get_subscription()["is_active"] is True

    report = app_client.complete_post_payment()

    assert report["analysis_data"]["perceived_age"] == 31
    assert app_client.storage.get_item(REAL_ANALYSIS_ID_KEY) == report["analysis_id"]
    # Falls back to the stored id
    assert app_client.get_full_report()["analysis_id"] == report["analysis_id"]
    assert app_client.get_progress()["total"] == 1


def test_preview_expires(app_client, fake_ai, clock):
    app_client.analyze_photo(TEST_IMAGE_DATA_URL)

    clock.advance(minutes=59, seconds=30)
    assert app_client.countdown() == "00:30"
    assert app_client.tick() == client_module.PREVIEW

    clock.advance(seconds=30)
    assert app_client.tick() == client_module.UPLOAD
    assert app_client.get_temp_analysis() is None


def test_resume_clears_expired_copy(app_client, fake_ai, clock):
    app_client.analyze_photo(TEST_IMAGE_DATA_URL)
    clock.advance(hours=2)

    assert app_client.resume() == client_module.LANDING
    assert TEMP_ANALYSIS_KEY not in app_client.storage


def test_resume_without_temp_analysis(app_client):
    assert app_client.resume() == client_module.LANDING


def test_save_requires_session_and_temp_analysis(app_client, fake_ai):
    with pytest.raises(GlowGuideClientError, match="Authentication required"):
        app_client.save_analysis_to_database()

    app_client.sign_up("nosave@test.com", TEST_PASSWORD)
    with pytest.raises(GlowGuideClientError, match="No temporary analysis data found"):
        app_client.save_analysis_to_database()


def test_server_errors_surface_with_status(app_client, fake_ai, clock):
    app_client.analyze_photo(TEST_IMAGE_DATA_URL)
    app_client.sign_up("nosub@test.com", TEST_PASSWORD)
    analysis_id = app_client.save_analysis_to_database()

    with pytest.raises(GlowGuideClientError) as exc:
        app_client.get_full_report(analysis_id)
    assert exc.value.status_code == 403
    assert exc.value.message == "Active subscription required to access full report"


def test_expired_ticket_save_fails(app_client, fake_ai, clock):
    app_client.analyze_photo(TEST_IMAGE_DATA_URL)
    app_client.sign_up("late@test.com", TEST_PASSWORD)
    clock.advance(minutes=61)

    with pytest.raises(GlowGuideClientError) as exc:
        app_client.save_analysis_to_database()
    assert exc.value.status_code == 410


def test_get_full_report_without_id(app_client):
    app_client.sign_up("noid@test.com", TEST_PASSWORD)
    with pytest.raises(GlowGuideClientError, match="No analysis ID found"):
        app_client.get_full_report()


def test_checkout_requires_sign_in(app_client):
    with pytest.raises(GlowGuideClientError, match="Please sign in to continue"):
        app_client.start_checkout(STRIPE_PRODUCTS[0].price_id)


def test_analyze_photo_error_does_not_touch_storage(app_client, fake_ai):
    with pytest.raises(GlowGuideClientError) as exc:
        app_client.analyze_photo("data:image/jpeg;base64,")
    assert exc.value.status_code == 400
    assert app_client.get_temp_analysis() is None


def test_sign_out_clears_temp_data(app_client, fake_ai):
    app_client.analyze_photo(TEST_IMAGE_DATA_URL)
    app_client.sign_up("bye@test.com", TEST_PASSWORD)

    app_client.sign_out()

    assert app_client.access_token is None
    assert app_client.get_temp_analysis() is None


def test_corrupt_session_entry_is_ignored():
    storage = SessionStorage({TEMP_ANALYSIS_KEY: "{not json"})
    glow = GlowGuideClient("http://testserver", storage=storage)
    assert glow.get_temp_analysis() is None
    assert glow.seconds_remaining() == 0


def test_file_session_storage_survives_restart(tmp_path):
    path = tmp_path / "session.json"
    storage = FileSessionStorage(path)
    storage.set_item(TEMP_ANALYSIS_KEY, '{"temp_analysis_id": "temp_1"}')
    storage.set_item(REAL_ANALYSIS_ID_KEY, "abc")
    storage.remove_item(REAL_ANALYSIS_ID_KEY)

    reopened = FileSessionStorage(path)
    assert reopened.get_item(TEMP_ANALYSIS_KEY) == '{"temp_analysis_id": "temp_1"}'
    assert reopened.get_item(REAL_ANALYSIS_ID_KEY) is None

    reopened.clear()
    assert len(FileSessionStorage(path)) == 0


def test_file_session_storage_with_unreadable_file(tmp_path):
    path = tmp_path / "session.json"
    path.write_text("garbage", encoding="utf-8")
    assert len(FileSessionStorage(path)) == 0


def test_encode_image_file(tmp_path):
    image = tmp_path / "face.png"
    image.write_bytes(base64.b64decode(TEST_IMAGE_B64))
    assert encode_image_file(image) == TEST_IMAGE_DATA_URL

    notes = tmp_path / "notes.txt"
    notes.write_text("hello", encoding="utf-8")
    with pytest.raises(ImageSelectionError, match="Please select an image file"):
        encode_image_file(notes)


def test_encode_image_file_size_limit(tmp_path, monkeypatch):
    monkeypatch.setattr(client_module, "MAX_UPLOAD_BYTES", 4)
    image = tmp_path / "big.jpg"
    image.write_bytes(b"\xff\xd8\xff\xe0\x00")
    with pytest.raises(ImageSelectionError, match="less than 5MB"):
        encode_image_file(image)


def test_cached_entry_without_ticket_id_is_not_a_temp_analysis(app_client, fake_ai):
    app_client.storage.set_item(TEMP_ANALYSIS_KEY, '{"expires_at": "2099-01-01T00:00:00.000Z"}')

    assert app_client.get_temp_analysis() is None
    assert app_client.resume() == client_module.LANDING
    assert TEMP_ANALYSIS_KEY not in app_client.storage

    app_client.storage.set_item(TEMP_ANALYSIS_KEY, '{"expires_at": "2099-01-01T00:00:00.000Z"}')
    app_client.sign_up("stale@test.com", TEST_PASSWORD)
    with pytest.raises(GlowGuideClientError, match="No temporary analysis data found"):
        app_client.save_analysis_to_database()


def test_return_from_checkout_leads_to_plan(app_client, fake_ai):
    app_client.analyze_photo(TEST_IMAGE_DATA_URL)
    assert app_client.state == client_module.PREVIEW

    app_client.sign_up("return@test.com", TEST_PASSWORD)
    success_url = app_client.start_checkout(STRIPE_PRODUCTS[0].price_id,
                                            success_url="https://app.test/?payment_success=true")
    assert app_client.state == client_module.PAYMENT

    assert app_client.resume(success_url) == client_module.POST_PAYMENT_AUTH
    app_client.complete_post_payment()
    assert app_client.state == client_module.PLAN

    app_client.get_progress()
    assert app_client.state == client_module.PROGRESS


def test_resume_ignores_other_return_urls(app_client, fake_ai):
    app_client.analyze_photo(TEST_IMAGE_DATA_URL)

    assert app_client.resume("https://app.test/?payment_success=false") == client_module.PREVIEW
    assert app_client.resume("https://app.test/") == client_module.PREVIEW
    assert client_module.is_payment_return("https://app.test/?payment_success=true")
    assert not client_module.is_payment_return(None)


def test_sign_out_returns_to_landing(app_client, fake_ai):
    app_client.analyze_photo(TEST_IMAGE_DATA_URL)
    app_client.sign_up("leave@test.com", TEST_PASSWORD)

    app_client.sign_out()

    assert app_client.state == client_module.LANDING
