"""Tests for pulling HTML out of model replies."""

from promomail.services.sanitizer import extract_html, is_valid_html, looks_like_html, split_emails

DOC = "<!DOCTYPE html>\n<html><body><p>Hello</p></body></html>"


def _email(label: str) -> str:
    body = "<p>" + "Great product. " * 10 + "</p>"
    return f"<!DOCTYPE html>\n<html><body><h1>{label}</h1>{body}</body></html>"


class TestExtractHtml:
    def test_chatty_fenced_reply(self):
        assert extract_html(f"Sure! ```html\n{DOC}\n```") == DOC

    def test_fence_forms_agree(self):
        wrapped = [
            f"```html\n{DOC}\n```",
            f"```HTML {DOC}```",
            f"```\n{DOC}\n```",
            f"Here you go:\n\n{DOC}\n\nEnjoy!",
            f"  {DOC}  ",
        ]
        assert {extract_html(text) for text in wrapped} == {DOC}

    def test_plain_text_is_trimmed(self):
        assert extract_html("  no html here \n") == "no html here"

    def test_never_raises_on_empty(self):
        assert extract_html("") == ""
        assert extract_html(None) == ""


class TestHtmlChecks:
    def test_looks_like_html(self):
        assert looks_like_html(DOC)
        assert looks_like_html("<html></html>")
        assert not looks_like_html("Subject: hi")

    def test_is_valid_html(self):
        assert is_valid_html("<html><body></body></html>")
        assert is_valid_html("<!doctype html><p>x</p>")
        assert not is_valid_html("<div>fragment</div>")
        assert not is_valid_html("")


class TestSplitEmails:
    def test_separator_with_style_comments(self):
        text = (
            f"<!-- Minimal Modern -->\n{_email('One')}\n<!-- EMAIL_SEPARATOR -->\n"
            f"<!-- Bold Retro -->\n{_email('Two')}"
        )
        emails = split_emails(text)
        assert [e.description for e in emails] == ["Minimal Modern", "Bold Retro"]
        assert [e.id for e in emails] == [1, 2]
        assert emails[1].html == _email("Two")

    def test_unnamed_emails_get_style_numbers(self):
        text = f"{_email('One')}<!--EMAIL_SEPARATOR-->{_email('Two')}"
        assert [e.description for e in split_emails(text)] == ["Style 1", "Style 2"]

    def test_fallback_without_separator(self):
        text = f"First:\n{_email('One')}\nSecond:\n{_email('Two')}"
        emails = split_emails(text)
        assert len(emails) == 2
        assert "<h1>Two</h1>" in emails[1].html

    def test_short_fragments_dropped(self):
        text = f"<!DOCTYPE html><html></html><!-- EMAIL_SEPARATOR -->{_email('Kept')}"
        emails = split_emails(text)
        assert len(emails) == 1
        assert emails[0].id == 2

    def test_no_documents(self):
        assert split_emails("nothing to see") == []
