from newscrawl.dedup import ArticleDraft, DedupStore, content_hash
from newscrawl.storage import count_table, get_article


def _draft(source_id, link="https://news.example.com/a", title="Title", content="Body"):
    return ArticleDraft(
        source_id=source_id, title=title, link=link, lead=None, content=content, depth=0
    )


def test_first_insert_is_new_then_duplicate(conn, make_source):
    source = make_source()
    store = DedupStore(conn)

    first = store.check_and_insert(_draft(source.id))
    assert first.is_new
    assert get_article(conn, first.article_id).title == "Title"

    again = store.check_and_insert(_draft(source.id))
    assert not again.is_new
    assert again.article_id is None
    assert count_table(conn, "articles") == 1
    assert store.exists("https://news.example.com/a")


def test_same_content_under_new_link_is_a_duplicate(conn, make_source):
    source = make_source()
    store = DedupStore(conn)
    store.check_and_insert(_draft(source.id))

    # differs only in whitespace and case, so the content hash matches
    moved = store.check_and_insert(
        _draft(source.id, link="https://news.example.com/a?utm_source=feed", title="  TITLE ")
    )
    assert not moved.is_new
    assert count_table(conn, "articles") == 1


def test_content_hash_normalizes_link_and_text():
    assert content_hash("https://Example.com/a/", "A  b", "C") == content_hash(
        "https://example.com/a", "a b", "c"
    )
    assert content_hash("https://example.com/a", "A", "C") != content_hash(
        "https://example.com/b", "A", "C"
    )
