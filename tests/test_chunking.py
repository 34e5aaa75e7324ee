from noteindex.analysis.chunking import chunk_text, hard_wrap


def test_short_text_is_one_chunk():
    chunks = chunk_text("alpha\nbeta\ngamma")
    assert chunks == [(0, 1, 3, "alpha\nbeta\ngamma")]


def test_blank_text_has_no_chunks():
    assert chunk_text("") == []
    assert chunk_text("\n\n   \n") == []


def test_windows_overlap_by_lines():
    lines = [f"line {i:03d} " + "x" * 40 for i in range(1, 101)]
    chunks = chunk_text("\n".join(lines), chunk_chars=500, overlap_lines=3)
    assert len(chunks) > 1
    assert [c[0] for c in chunks] == list(range(len(chunks)))
    first, second = chunks[0], chunks[1]
    assert first[1] == 1
    # second window restarts three lines before the first one ended
    assert second[1] == first[2] - 2
    assert lines[first[2] - 1] in second[3]
    assert chunks[-1][2] == 100


def test_hard_wrap_splits_runaway_text():
    pieces = hard_wrap("a" * 20000, window=8000, overlap=200)
    assert all(len(p) <= 8000 for p in pieces)
    assert len(pieces) == 3
