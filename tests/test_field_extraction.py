"""
Tests for the selector fallback chains in listing_scraper.extractors.field_extraction.

Everything here is pure: HTML strings go through BeautifulSoup/lxml, no browser.
"""

from __future__ import annotations

from bs4 import BeautifulSoup

from listing_scraper.config import CardSelectorConfig
from listing_scraper.data_models.models import FieldError, Found, NotFound
from listing_scraper.extractors.card_extraction import extract_cards
from listing_scraper.extractors.field_extraction import (
    clean_name,
    extract_contacts,
    extract_name,
    extract_specialty,
    extract_table_rows,
    is_boilerplate,
    is_valid_email,
    is_valid_name,
    name_from_title,
    pairs_from_rows,
    resolve_chain,
    scan_text_for_contacts,
    text_chain,
)


def soup_of(body: str) -> BeautifulSoup:
    return BeautifulSoup(f"<html><body>{body}</body></html>", "lxml")


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


class TestNameRules:
    def test_boilerplate(self) -> None:
        assert is_boilerplate("View Profile")
        assert is_boilerplate("  click here >")
        assert is_boilerplate("")
        assert not is_boilerplate("Cardiology")

    def test_clean_name_strips_labels(self) -> None:
        assert clean_name("Dr. Tan Ah Kow  Specialty: Cardiology") == "Dr. Tan Ah Kow"
        assert clean_name("Dr Lim Languages Spoken: English") == "Dr Lim"
        assert clean_name("Dr Ong View Profile") == "Dr Ong"

    def test_valid_names(self) -> None:
        assert is_valid_name("Dr. A")
        assert is_valid_name("Tan Ah Kow")
        assert not is_valid_name("ab")
        assert not is_valid_name("Click Here")
        assert not is_valid_name("view all the profile pages")


# ---------------------------------------------------------------------------
# Chains
# ---------------------------------------------------------------------------


class TestChains:
    def test_denylisted_text_falls_through_to_next_selector(self) -> None:
        soup = soup_of(
            '<div class="doctor-profile"><h1>View Profile</h1></div>'
            '<div class="doctor-name"><h1>Dr. Jane Lim</h1></div>'
        )
        assert extract_name(soup) == "Dr. Jane Lim"

    def test_configured_selectors_come_first(self) -> None:
        soup = soup_of('<h1>Dr. Page Heading</h1><span class="who">Dr. Wong Mei Ling</span>')
        assert extract_name(soup, selectors=[".who"]) == "Dr. Wong Mei Ling"

    def test_broken_selector_is_a_field_error_and_chain_continues(self) -> None:
        soup = soup_of("<h2>Dr. Goh Keng Swee</h2>")
        outcomes = list(text_chain(soup, ["div[", ".missing", "h2"], is_valid_name))

        assert isinstance(outcomes[0], FieldError)
        assert isinstance(outcomes[1], NotFound)
        assert outcomes[2] == Found(value="Dr. Goh Keng Swee", selector="h2")
        assert resolve_chain(outcomes).selector == "h2"

    def test_resolve_chain_stops_at_first_found(self) -> None:
        def outcomes():
            yield NotFound(selector="a")
            yield Found(value="x", selector="b")
            raise AssertionError("chain consumed past the first Found")

        assert resolve_chain(outcomes()).value == "x"

    def test_resolve_chain_without_found(self) -> None:
        assert resolve_chain([NotFound("a"), FieldError("b", "bad")]) is None

    def test_title_fallback(self) -> None:
        soup = soup_of("<p>No headings here</p>")
        assert extract_name(soup, title="Dr Tan Ah Kow | Heart Clinic") == "Dr Tan Ah Kow"

    def test_title_without_name(self) -> None:
        assert name_from_title("Our Team | Heart Clinic") is None
        assert name_from_title("") is None

    def test_specialty_skips_boilerplate(self) -> None:
        soup = soup_of('<p class="specialty">Read More</p><p class="speciality">Cardiology</p>')
        assert extract_specialty(soup) == "Cardiology"

    def test_specialty_missing(self) -> None:
        assert extract_specialty(soup_of("<p>Nothing</p>")) is None


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


class TestContacts:
    def test_contact_links_resolved_against_page(self) -> None:
        soup = soup_of(
            '<div class="contact-info"><a href="tel:+6561234567">6123 4567</a>'
            '<a href="/book">Book</a><a href="#top">Top</a></div>'
        )
        contacts = extract_contacts(soup, page_url="https://x.test/dr/tan")

        assert contacts == [
            {"text": "6123 4567", "link": "tel:+6561234567"},
            {"text": "Book", "link": "https://x.test/book"},
            {"text": "Top", "link": "https://x.test/dr/tan#top"},
        ]

    def test_duplicate_links_are_dropped(self) -> None:
        soup = soup_of('<a href="mailto:a@b.sg">a@b.sg</a><a href="mailto:a@b.sg">Email us</a>')
        assert extract_contacts(soup) == [{"text": "a@b.sg", "link": "mailto:a@b.sg"}]

    def test_regex_fallback_when_no_links(self) -> None:
        soup = soup_of("<p>Call 6123 4567 or email clinic@heart.sg for appointments.</p>")
        assert extract_contacts(soup) == [
            {"text": "6123 4567", "link": "tel:61234567"},
            {"text": "clinic@heart.sg", "link": "mailto:clinic@heart.sg"},
        ]

    def test_scan_ignores_asset_names_and_short_numbers(self) -> None:
        contacts = scan_text_for_contacts("logo@2x.png ref 1234 5678 +65 9876 5432")
        assert contacts == [{"text": "+65 9876 5432", "link": "tel:+6598765432"}]

    def test_email_filter(self) -> None:
        assert is_valid_email("dr.tan@clinic.sg")
        assert not is_valid_email("sprite@3x.webp")
        assert not is_valid_email("someone@example.com")


# ---------------------------------------------------------------------------
# Table rows
# ---------------------------------------------------------------------------


class TestTableRows:
    def test_short_rows_and_empty_cells_are_dropped(self) -> None:
        assert pairs_from_rows([["Name", "Dr. A"], ["", "x"], ["Key"]]) == [{"key": "Name", "value": "Dr. A"}]

    def test_only_first_two_cells_used(self) -> None:
        soup = soup_of(
            '<div class="panel-body"><table><tbody>'
            "<tr><td>Clinic</td><td>Novena  Medical</td><td>ignored</td></tr>"
            "<tr><td>Languages</td><td></td></tr>"
            "</tbody></table></div>"
        )
        assert extract_table_rows(soup, ".panel-body tbody tr") == [{"key": "Clinic", "value": "Novena Medical"}]

    def test_no_selector(self) -> None:
        assert extract_table_rows(soup_of("<table></table>"), None) == []


# ---------------------------------------------------------------------------
# Cards
# ---------------------------------------------------------------------------


class TestCards:
    def test_card_blocks_are_separate_scopes(self) -> None:
        soup = soup_of(
            '<a class="site" href="https://clinic.sg">Website</a>'
            '<div class="card"><h3>Dr. Tan Ah Kow</h3><p class="pos">Principal</p>'
            '<a href="tel:61234567">6123 4567</a></div>'
            '<div class="card"><h3>View Profile</h3></div>'
            '<div class="card"><h3>Mdm Lee Siew Ling</h3></div>'
        )
        cards = CardSelectorConfig(card=".card", position=".pos", website="a.site")
        records = extract_cards(soup, cards, "https://clinic.sg/team")

        assert [r["name"] for r in records] == ["Dr. Tan Ah Kow", "Mdm Lee Siew Ling"]
        assert records[0]["position"] == "Principal"
        assert records[0]["contact"] == [{"text": "6123 4567", "link": "tel:61234567"}]
        assert records[1]["contact"] == []
        assert records[1]["website"] == "https://clinic.sg"

    def test_without_card_selector_pairs_by_index(self) -> None:
        soup = soup_of(
            '<section><div><h3>Dr. Tan Ah Kow</h3></div><a href="tel:61234567">Call</a></section>'
            '<section><div><div><h3>Dr. Lim Bee Hoon</h3></div></div></section>'
            '<p class="pos">Principal</p><p class="pos">Vice Principal</p>'
        )
        cards = CardSelectorConfig(position=".pos")
        records = extract_cards(soup, cards)

        assert [(r["name"], r["position"]) for r in records] == [
            ("Dr. Tan Ah Kow", "Principal"),
            ("Dr. Lim Bee Hoon", "Vice Principal"),
        ]
        assert records[0]["contact"] == [{"text": "Call", "link": "tel:61234567"}]
        assert records[1]["contact"] == []
