"""Tests for the structured query parser."""

from __future__ import annotations

import re
from collections import Counter

import pytest

from vault_search.index.query import (
    RESERVED_PREFIXES,
    DateFilter,
    ParsedQuery,
    TermGroup,
    parse_query,
)

_DATE_OPERATORS = {"after": ">", "before": "<", "on": ""}


def render_tokens(q: ParsedQuery) -> list[str]:
    """Write every field of a parsed query back as query tokens."""
    tokens = [q.text]
    tokens += [f'"{p}"' for p in q.phrases]
    tokens += [f"#{t}" for t in q.tags]
    tokens += [f"-#{t}" for t in q.excluded_tags]
    tokens += [f"-{t}" for t in q.excluded_terms]
    tokens += [f"path:{p}" for p in q.paths]
    tokens += [f"title:{t}" for t in q.title_terms]
    tokens += [f"heading:{t}" for t in q.heading_terms]
    tokens += [f"{g.context}:({' '.join(g.terms)})" for g in q.term_groups]
    for key, value in q.frontmatter:
        if key in RESERVED_PREFIXES or not re.fullmatch(r"[A-Za-z_][\w\-]*", key):
            key = f"[{key}]"
        tokens.append(f"{key}:{value}")
    tokens += [
        f"{d.field}:{_DATE_OPERATORS[d.operator]}{d.date}" for d in q.date_filters
    ]
    return tokens


def visible_chars(text: str) -> Counter:
    return Counter(c for c in text if not c.isspace())


class TestFreeText:
    """Tests for plain text handling."""

    def test_plain_text_passes_through(self):
        """Text without structure becomes the residual text."""
        assert parse_query("hello world").text == "hello world"

    def test_whitespace_collapsed(self):
        """Leftover gaps from removed tokens are collapsed."""
        q = parse_query("  alpha   #tag   beta  ")
        assert q.text == "alpha beta"

    @pytest.mark.parametrize("raw", ["", "   ", None])
    def test_empty_query_is_empty(self, raw):
        """Blank input produces an empty query."""
        q = parse_query(raw)
        assert q.text == ""
        assert q.is_empty

    def test_hash_inside_word_is_text(self):
        """A # in the middle of a word is not a tag."""
        q = parse_query("C# foo#bar")
        assert q.tags == ()
        assert q.text == "C# foo#bar"


class TestPhrases:
    """Tests for quoted phrases."""

    def test_phrase_extracted(self):
        q = parse_query('"exact phrase" rest')
        assert q.phrases == ("exact phrase",)
        assert q.text == "rest"

    def test_multiple_phrases_in_order(self):
        q = parse_query('"one two" and "three four"')
        assert q.phrases == ("one two", "three four")
        assert q.text == "and"

    def test_structure_inside_phrase_is_literal(self):
        """Tags and prefixes inside quotes stay part of the phrase."""
        q = parse_query('"#notatag path:nowhere"')
        assert q.phrases == ("#notatag path:nowhere",)
        assert q.tags == ()
        assert q.paths == ()

    def test_unbalanced_quote_is_text(self):
        q = parse_query('"unbalanced words')
        assert q.phrases == ()
        assert q.text == '"unbalanced words'

    def test_empty_phrase_dropped(self):
        q = parse_query('"" word')
        assert q.phrases == ()
        assert q.text == "word"


class TestTags:
    """Tests for #tag, -#tag and tag:."""

    def test_include_and_exclude(self):
        q = parse_query("#a -#b")
        assert q.tags == ("a",)
        assert q.excluded_tags == frozenset({"b"})
        assert q.text == ""

    def test_nested_tag(self):
        assert parse_query("#parent/child").tags == ("parent/child",)

    def test_tag_prefix_strips_hash(self):
        q = parse_query("tag:#foo tag:bar")
        assert q.tags == ("foo", "bar")

    def test_duplicates_kept(self):
        assert parse_query("#a #a").tags == ("a", "a")

    def test_negated_tag_not_left_as_text(self):
        """-#tag is consumed whole; no dangling '-' remains."""
        assert parse_query("-#draft notes").text == "notes"


class TestPrefixes:
    """Tests for path/title/heading filters and term groups."""

    def test_path_and_folder_alias(self):
        q = parse_query("path:work folder:personal/")
        assert q.paths == ("work", "personal")

    def test_title_and_file_alias(self):
        q = parse_query("title:plan file:notes")
        assert q.title_terms == ("plan", "notes")

    def test_heading(self):
        assert parse_query("heading:intro").heading_terms == ("intro",)

    def test_prefixes_case_insensitive(self):
        q = parse_query("Path:Work TITLE:Plan")
        assert q.paths == ("Work",)
        assert q.title_terms == ("Plan",)

    @pytest.mark.parametrize("context", ["line", "section", "heading"])
    def test_term_groups(self, context):
        q = parse_query(f"{context}:(alpha beta) rest")
        assert q.term_groups == (TermGroup(context, ("alpha", "beta")),)
        assert q.heading_terms == ()
        assert q.text == "rest"

    def test_prefix_without_value(self):
        """A prefix token with no value is accepted with an empty value."""
        q = parse_query("title: word")
        assert q.title_terms == ("",)
        assert q.text == "word"


class TestDates:
    """Tests for created:/modified: filters."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("created:>2024-01-01", DateFilter("created", "after", "2024-01-01")),
            ("created:<2024-01-01", DateFilter("created", "before", "2024-01-01")),
            ("created:2024-01-01", DateFilter("created", "on", "2024-01-01")),
            ("modified:>2023-12-31", DateFilter("modified", "after", "2023-12-31")),
        ],
    )
    def test_operators(self, raw, expected):
        q = parse_query(raw)
        assert q.date_filters == (expected,)
        assert q.text == ""

    def test_invalid_date_stays_literal(self):
        """Not a calendar date: degrade to text, not frontmatter."""
        q = parse_query("created:2024-13-45 notes")
        assert q.date_filters == ()
        assert q.frontmatter == ()
        assert q.text == "created:2024-13-45 notes"

    def test_day_bounds_cover_whole_day(self):
        start, end = DateFilter("created", "on", "2024-01-01").day_bounds()
        assert end - start == 86_400_000 - 1
        assert start == 1704067200000


class TestFrontmatter:
    """Tests for key:value and [key]:value filters."""

    def test_unknown_prefix_is_frontmatter(self):
        q = parse_query("status:active notes")
        assert q.frontmatter == (("status", "active"),)
        assert q.text == "notes"

    def test_empty_value(self):
        assert parse_query("status:").frontmatter == (("status", ""),)

    def test_reserved_keys_never_frontmatter(self):
        for key in RESERVED_PREFIXES:
            assert key not in dict(parse_query(f"{key}:x").frontmatter)

    def test_bracket_form_reaches_reserved_keys(self):
        q = parse_query("[tag]:x [due date]:friday")
        assert q.frontmatter == (("due date", "friday"), ("tag", "x"))
        assert q.tags == ()


class TestExcludedTerms:
    """Tests for -word."""

    def test_negated_word(self):
        q = parse_query("-draft notes")
        assert q.excluded_terms == frozenset({"draft"})
        assert q.text == "notes"

    def test_lone_dash_is_text(self):
        assert parse_query("a - b").text == "a - b"


class TestComposition:
    """Tests for complete queries and derived properties."""

    def test_everything_at_once(self):
        q = parse_query(
            '"quarterly planning" #project -#old path:work '
            "created:>2024-01-01 status:active -draft meeting"
        )
        assert q == ParsedQuery(
            text="meeting",
            phrases=("quarterly planning",),
            tags=("project",),
            excluded_tags=frozenset({"old"}),
            excluded_terms=frozenset({"draft"}),
            paths=("work",),
            frontmatter=(("status", "active"),),
            date_filters=(DateFilter("created", "after", "2024-01-01"),),
        )

    def test_native_only_query_has_no_post_filters(self):
        q = parse_query("#a created:2024-01-01")
        assert not q.has_post_filters
        assert not q.is_empty

    def test_path_query_has_post_filters(self):
        assert parse_query("path:work").has_post_filters

    @pytest.mark.parametrize(
        "raw",
        ['"', "((", "line:(", "[", "]:x", "-#", "#", ":::", "created:>", "-", "[]:"],
    )
    def test_malformed_input_never_raises(self, raw):
        """Parsing is total: odd fragments degrade instead of failing."""
        assert isinstance(parse_query(raw), ParsedQuery)

    @pytest.mark.parametrize(
        "raw",
        [
            '"quarterly planning" #project -#old path:work '
            "created:>2024-01-01 status:active -draft meeting",
            "title:notes heading:Intro line:(a b) section:(c) heading:(d e) "
            "[due date]:friday",
            "C# foo#bar a - b modified:<2023-05-06",
            '"unbalanced words',
            "line:(",
            "created:2024-13-45 x",
            "((",
            ":::",
            "-",
            "]:x",
            "#",
        ],
    )
    def test_tokens_and_text_cover_the_query(self, raw):
        """No non-whitespace character is lost or invented by parsing."""
        rendered = " ".join(render_tokens(parse_query(raw)))
        assert visible_chars(rendered) == visible_chars(raw)

    def test_empty_phrase_is_the_only_drop(self):
        raw = '"" word'
        rendered = " ".join(render_tokens(parse_query(raw)))
        assert visible_chars(rendered) + visible_chars('""') == visible_chars(raw)

    def test_parsed_query_is_hashable(self):
        """Frontmatter is stored as pairs, so the whole query is immutable."""
        q = parse_query("status:active [due date]:friday #a")
        assert hash(q) == hash(parse_query("status:active [due date]:friday #a"))
        assert dict(q.frontmatter) == {"status": "active", "due date": "friday"}
