"""
Tests for email parsing and fingerprinting.
"""

import re

import pytest

from freight_intake.utils.email_fingerprint import (
    extract_attachments,
    extract_plain_body,
    extract_sender_email,
    fingerprint,
    html_to_text,
    parse_headers,
)
from tests.conftest import build_email


@pytest.mark.unit
class TestParsing:
    def test_headers(self):
        headers = parse_headers(build_email())
        assert headers["from"] == "Jane Doe <jane@example.com>"
        assert headers["subject"] == "Transport request"
        assert headers["message-id"] == "<abc123@example.com>"
        assert headers["cc"] == ""

    def test_plain_body_is_preferred_over_html(self):
        raw = build_email(body="Plain text", html="<p>Rich text</p>")
        assert extract_plain_body(raw) == "Plain text"

    def test_html_only_body_is_stripped(self):
        raw = build_email(body=None, html="<p>Ship from Antwerp</p><br>to Lagos &amp; Tema<style>p {}</style>")
        body = extract_plain_body(raw)
        assert "Ship from Antwerp" in body
        assert "Lagos & Tema" in body
        assert "<" not in body
        assert "p {}" not in body

    def test_attachments_are_not_part_of_the_body(self):
        raw = build_email(body="See attached", attachments=[("quote.pdf", "application", "pdf", b"%PDF-1.4 data")])
        assert extract_plain_body(raw) == "See attached"
        assert extract_attachments(raw) == [("quote.pdf", "application/pdf", b"%PDF-1.4 data")]

    def test_html_to_text_breaks_lines(self):
        assert html_to_text("a<br/>b</div>c") == "a\nb\nc"

    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Jane Doe <Jane@Example.COM>", "jane@example.com"),
            ("ops@forwarder.example", "ops@forwarder.example"),
            ("undisclosed-recipients", None),
            (None, None),
        ],
    )
    def test_sender_email(self, header, expected):
        assert extract_sender_email(header) == expected


@pytest.mark.unit
class TestFingerprint:
    def test_identity_of_the_same_email(self):
        raw = build_email(body="VIN: 1HGCM82633A123456")
        assert fingerprint(raw) == fingerprint(raw)

    def test_message_id_and_sha(self):
        fp = fingerprint(build_email())
        assert fp.message_id == "<abc123@example.com>"
        assert re.fullmatch(r"[0-9a-f]{64}", fp.content_sha)

    def test_missing_message_id(self):
        assert fingerprint(build_email(message_id=None)).message_id is None

    def test_resent_copy_with_new_message_id_has_same_sha(self):
        first = fingerprint(build_email(message_id="<one@example.com>"))
        second = fingerprint(build_email(message_id="<two@example.com>"))
        assert first.message_id != second.message_id
        assert first.content_sha == second.content_sha

    def test_sender_case_and_whitespace_are_normalized(self):
        first = fingerprint(build_email(sender="Jane Doe <jane@example.com>"))
        second = fingerprint(build_email(sender="Jane  Doe <JANE@example.com>"))
        assert first.content_sha == second.content_sha

    def test_body_changes_the_sha(self):
        first = fingerprint(build_email(body="from Antwerp to Lagos"))
        second = fingerprint(build_email(body="from Antwerp to Tema"))
        assert first.content_sha != second.content_sha

    def test_subject_changes_the_sha(self):
        first = fingerprint(build_email(subject="Quote 1"))
        second = fingerprint(build_email(subject="Quote 2"))
        assert first.content_sha != second.content_sha

    def test_precomputed_parts_give_the_same_result(self):
        raw = build_email(body="Hello there")
        assert fingerprint(raw, parse_headers(raw), extract_plain_body(raw)) == fingerprint(raw)
