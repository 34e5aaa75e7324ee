import json

import pytest

from conftest import NOTES_MD, WORK_ORG
from noteindex.analysis import (DefaultExtractor, classify_path, extract_hashtags,
                                flatten_headings, is_binary_content)
from noteindex.analysis.extraction import classify_link, parse_block_headers
from noteindex.indexer import build_heading_records


@pytest.fixture
def extractor():
    return DefaultExtractor()


def test_org_outline(extractor):
    doc = extractor.parse(WORK_ORG, "org")
    headings = list(flatten_headings(doc))
    assert [h.title for h in headings] == ["Work", "Urgent task"]

    work, task = headings
    assert work.level == 1 and work.tags == ["work"]
    assert task.level == 2
    assert task.todo_state == "TODO"
    assert task.tags == ["urgent"]
    assert task.deadline == "2025-03-14 Fri"
    assert task.properties == {"OWNER": "dana"}
    assert doc.headings[0].children[0] is task


def test_child_inherits_parent_tags(extractor):
    text = "* Work :work:\n** Urgent task :urgent:\n* Home\n** Chores\n"
    doc = extractor.parse(text, "org")
    records = build_heading_records("/n/a.org", doc, extractor)
    by_title = {r.title: r for r in records}
    assert by_title["Urgent task"].tags == ["urgent"]
    assert by_title["Urgent task"].inherited_tags == ["work"]
    assert by_title["Chores"].inherited_tags == []
    assert by_title["Work"].inherited_tags == []


def test_org_source_blocks_and_links(extractor):
    doc = extractor.parse(WORK_ORG, "org")
    assert len(doc.source_blocks) == 1
    block = doc.source_blocks[0]
    assert block.language == "python"
    assert block.content == 'print("release")'
    assert block.headers == {"results": "output"}

    assert [(l.link_type, l.target, l.description) for l in doc.links] == [
        ("https", "https://example.com", "Example")
    ]


def test_custom_todo_keywords(extractor):
    text = "#+TODO: IDEA | SHIPPED\n* IDEA Write a blog post\n* SHIPPED [#B] Launch\n"
    headings = list(flatten_headings(extractor.parse(text, "org")))
    assert headings[0].todo_state == "IDEA"
    assert headings[1].todo_state == "SHIPPED"
    assert headings[1].priority == "B"
    assert headings[1].title == "Launch"


def test_markdown(extractor):
    doc = extractor.parse(NOTES_MD, "md")
    headings = list(flatten_headings(doc))
    assert headings[0].title == "Groceries"
    assert headings[0].tags == ["home"]
    assert headings[1].todo_state == "TODO"
    assert headings[1].title == "Call plumber"
    assert doc.source_blocks[0].language == "python"
    assert doc.source_blocks[0].content == "x = 1"


def test_notebook_cells(extractor):
    nb = {
        "metadata": {"language_info": {"name": "python"}},
        "cells": [
            {"cell_type": "markdown", "source": ["# Analysis\n", "Load the data"]},
            {"cell_type": "code", "source": "import pandas as pd"},
        ],
    }
    doc = extractor.parse(json.dumps(nb), "ipynb")
    assert doc.text == "# Analysis\nLoad the data\n\nimport pandas as pd"
    assert doc.headings[0].title == "Analysis"
    assert doc.headings[0].cell_index == 0
    assert doc.source_blocks[0].cell_index == 1
    assert doc.source_blocks[0].line_number == 4


def test_invalid_notebook_raises(extractor):
    with pytest.raises(ValueError):
        extractor.parse("{not json", "ipynb")
    with pytest.raises(ValueError):
        extractor.parse(json.dumps({"cells": "nope"}), "ipynb")


def test_unknown_doc_type(extractor):
    with pytest.raises(ValueError):
        extractor.parse("text", "rst")


def test_hashtags():
    text = "Plan #Release and #release-notes; skip a#b, &#39; and #+TITLE"
    assert extract_hashtags(text) == ["release", "release-notes"]


def test_link_classification():
    assert classify_link("https://x.org") == "https"
    assert classify_link("file:notes.org") == "file"
    assert classify_link("*Heading") == "heading"
    assert classify_link("#custom") == "custom-id"
    assert classify_link("./other.md") == "file"
    assert classify_link("Some Target") == "fuzzy"


def test_block_headers():
    assert parse_block_headers(":results output :session main") == {
        "results": "output",
        "session": "main",
    }


def test_file_types():
    assert classify_path("a/b.org") == "org"
    assert classify_path("a/b.MARKDOWN") == "md"
    assert classify_path("a/b.ipynb") == "ipynb"
    assert classify_path("a/b.txt") is None
    assert is_binary_content("abc\0def")
    assert not is_binary_content("plain text\n")
