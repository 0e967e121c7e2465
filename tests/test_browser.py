"""
Mock browser surface: capability sets, canvas output and fingerprint stability.
"""

from app.wasm.browser import (
    CLOCK_BACKSET_MS,
    DATA_URL_PREFIX,
    PROCESS_START_MS,
    SESSION_STORAGE_KEY,
    Canvas,
    ElementCollection,
    FingerprintProfile,
    MockBrowser,
)
from app.wasm.heap import UNDEFINED


class TestFingerprintProfile:
    def test_create_fills_session_and_anchor(self):
        profile = FingerprintProfile.create()
        assert len(profile.session_id) == 32
        assert profile.clock_anchor_ms == PROCESS_START_MS - CLOCK_BACKSET_MS

    def test_overrides_win_and_unknown_keys_are_ignored(self):
        profile = FingerprintProfile.create(screen_width=2560, bogus="x", language=None)
        assert profile.screen_width == 2560
        assert profile.language == "en-US"

    def test_each_profile_gets_its_own_session(self):
        assert FingerprintProfile.create().session_id != FingerprintProfile.create().session_id


class TestMockBrowser:
    def test_storage_only_knows_session_key(self, profile):
        storage = MockBrowser(profile).window.localStorage
        assert storage.getItem(SESSION_STORAGE_KEY) == profile.session_id
        assert storage.getItem("other") is None
        storage.setItem(SESSION_STORAGE_KEY, "changed")
        assert storage.getItem(SESSION_STORAGE_KEY) == profile.session_id

    def test_canvas_data_url_is_stable_after_drawing(self, profile):
        browser = MockBrowser(profile)
        canvas = browser.document.createElement("canvas")
        assert isinstance(canvas, Canvas)
        before = canvas.toDataURL()
        ctx = canvas.getContext("2d")
        ctx.set_property("font", "14px Arial")
        ctx.fillText("fingerprint", 2, 2)
        assert canvas.toDataURL() == before
        assert before.startswith(DATA_URL_PREFIX + profile.canvas_signature)

    def test_unknown_context_kind_is_null(self, profile):
        canvas = MockBrowser(profile).document.createElement("canvas")
        assert canvas.getContext("webgl") is None

    def test_missing_properties_read_as_undefined(self, profile):
        navigator = MockBrowser(profile).window.navigator
        assert navigator.get_property("userAgent") == profile.user_agent
        assert navigator.get_property("webdriver") is UNDEFINED
        assert navigator.set_property("platform", "Linux") is False

    def test_body_collection_behaves_like_html_collection(self, profile):
        body = MockBrowser(profile).document.getElementsByTagName("body")
        assert isinstance(body, ElementCollection)
        assert body.length == 1
        assert body[0].tagName == "BODY"
        assert body.get_property("0") is body.item(0)
        assert [e.tagName for e in body] == ["BODY"]
        assert len(MockBrowser(profile).document.getElementsByTagName("video")) == 0

    def test_performance_now_counts_from_anchor(self, profile):
        browser = MockBrowser(profile, clock=lambda: profile.clock_anchor_ms + 1234.5)
        assert browser.window.performance.now() == 1234.5

    def test_date_reads_the_anchor(self, profile):
        browser = MockBrowser(profile)
        assert browser.date_now() == float(profile.clock_anchor_ms)
        assert browser.new_date().getTime() == float(profile.clock_anchor_ms)

    def test_fingerprint_is_deterministic_per_profile(self, profile):
        first = MockBrowser(profile).client_fingerprint()
        assert first == MockBrowser(profile).client_fingerprint()
        assert first.isalnum()
        other = profile.with_overrides(screen_width=1280)
        assert MockBrowser(other).client_fingerprint() != first

    def test_random_is_constant_per_session(self, profile):
        value = MockBrowser(profile).random_value
        assert 0 <= value < 1
        assert MockBrowser(profile).random_value == value
