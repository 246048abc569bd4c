"""Tests for email body preparation."""

from mailcrm.mail.body import TRUNCATION_MARKER, html_to_text, prepare_body


class TestHtmlToText:
    def test_strips_tags_and_unescapes(self) -> None:
        text = html_to_text("<p>Fish &amp; chips</p>")
        assert "Fish & chips" in text
        assert "<" not in text

    def test_drops_script_and_style(self) -> None:
        text = html_to_text(
            "<html><head><title>x</title></head><style>p {color: red}</style>"
            "<body><script>alert(1)</script>Hello</body></html>"
        )
        assert "alert" not in text
        assert "color" not in text
        assert "Hello" in text

    def test_block_tags_become_newlines(self) -> None:
        text = html_to_text("line one<br>line two</p>line three")
        assert text.count("\n") == 2


class TestPrepareBody:
    def test_empty(self) -> None:
        assert prepare_body(None) == ""
        assert prepare_body("") == ""

    def test_html_body(self) -> None:
        body = prepare_body(
            "<div>Hi Jane,</div><div>Can we meet <b>Tuesday</b>?</div>", is_html=True
        )
        assert "Hi Jane," in body
        assert "Can we meet Tuesday ?" in body
        assert "<" not in body

    def test_cuts_quoted_reply(self) -> None:
        raw = (
            "Tuesday works, see you then.\n\n"
            "On Mon, Dec 16, 2024 at 9:00 AM Jane Doe <jane@acme.io> wrote:\n"
            "> Can we meet on Tuesday?\n"
        )
        assert prepare_body(raw) == "Tuesday works, see you then."

    def test_cuts_outlook_header_block(self) -> None:
        raw = (
            "Thanks, forwarding to the team.\n\n"
            "From: Jane Doe <jane@acme.io>\n"
            "Sent: Monday, December 16, 2024 9:00 AM\n"
            "To: Me\n"
            "Subject: Pricing\n"
        )
        assert prepare_body(raw) == "Thanks, forwarding to the team."

    def test_cuts_forwarded_marker(self) -> None:
        raw = "FYI\n\n---------- Forwarded Message ----------\nOld stuff"
        assert prepare_body(raw) == "FYI"

    def test_quote_on_first_line_is_kept_as_content(self) -> None:
        raw = "On Monday you wrote:\nSounds good.\n> quoted"
        body = prepare_body(raw)
        assert "Sounds good." in body
        assert "> quoted" not in body

    def test_collapses_whitespace(self) -> None:
        body = prepare_body("Hello    there\r\n\r\n\r\n\r\nBye")
        assert body == "Hello there\n\nBye"

    def test_truncates_with_marker(self) -> None:
        body = prepare_body("a" * 5000, max_length=1000)
        assert len(body) == 1000
        assert body.endswith(TRUNCATION_MARKER)

    def test_short_body_untouched(self) -> None:
        assert prepare_body("Short note.", max_length=1000) == "Short note."
