from __future__ import annotations

from listing_scraper.config import ValidationConfig
from listing_scraper.extractors.page_validation import strip_tracking_text, validate_html

PROFILE_TEXT = (
    "Dr. Tan Ah Kow is a consultant cardiologist with over twenty years of clinical practice. "
    "He sees patients at the Novena clinic and speaks English, Mandarin and Hokkien."
)

TRACKING_ONLY = """
<html><head><title>Loading</title>
<script async src="https://www.googletagmanager.com/gtag/js?id=G-ABC12345"></script>
<script>window.dataLayer = window.dataLayer || []; gtag('config', 'G-ABC12345');</script>
</head><body><noscript>Please enable JavaScript to continue.</noscript>
<div>Google Tag Manager</div></body></html>
"""


class TestStripTrackingText:
    def test_removes_tracking_strings(self) -> None:
        assert strip_tracking_text("Google Analytics GTM-ABC123 Dr Tan") == "Dr Tan"

    def test_keeps_ordinary_text(self) -> None:
        assert strip_tracking_text("  Family   medicine ") == "Family medicine"


class TestValidateHtml:
    def test_profile_page_is_valid(self) -> None:
        html = f"<html><head><title>Dr Tan</title></head><body><h1>Dr. Tan</h1><p>{PROFILE_TEXT}</p></body></html>"
        validation = validate_html(html)

        assert validation.is_valid
        assert validation.title == "Dr Tan"
        assert validation.has_domain_keywords
        assert not validation.is_remediable

    def test_tracking_only_page_is_invalid_but_remediable(self) -> None:
        validation = validate_html(TRACKING_ONLY)

        assert validation.has_tracking_boilerplate
        assert validation.meaningful_length < 100
        assert not validation.is_valid
        assert validation.is_remediable

    def test_error_title_is_invalid_and_not_remediable(self) -> None:
        html = f"<html><body><p>{PROFILE_TEXT}</p></body></html>"
        validation = validate_html(html, title="404 - Page missing")

        assert validation.has_error
        assert not validation.is_valid
        assert not validation.is_remediable

    def test_not_found_body_is_error(self) -> None:
        html = f"<html><body><h2>Page not found</h2><p>{PROFILE_TEXT}</p></body></html>"
        assert validate_html(html, title="Clinic").has_error

    def test_iframe_shell(self) -> None:
        html = '<html><body><iframe src="https://embed.x.test/profile"></iframe><p>Loading</p></body></html>'
        validation = validate_html(html, title="Profile")

        assert validation.is_iframe_shell
        assert not validation.is_valid
        assert validation.is_remediable

    def test_min_content_length_is_configurable(self) -> None:
        html = "<html><body><p>Dr. Lim, General Practice</p></body></html>"
        assert not validate_html(html, title="Dr Lim").is_valid
        assert validate_html(html, title="Dr Lim", config=ValidationConfig(min_content_length=10)).is_valid

    def test_script_text_does_not_count(self) -> None:
        html = "<html><body><script>" + "var x = 1;" * 50 + "</script><p>Hi</p></body></html>"
        validation = validate_html(html, title="x")
        assert validation.meaningful_length == 2
