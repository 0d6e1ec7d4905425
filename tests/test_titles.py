from codex_bridge.models import TopicKey
from codex_bridge.titles import MAX_TITLE_LENGTH, TitleDebouncer, format_topic_title


def test_title_shows_state_context_and_path_tail():
    assert format_topic_title("demo", "/home/me/repos/demo", busy=False, context_left=77) == "🟢 demo · 77% · repos/demo"
    assert format_topic_title("demo", "C:\\work\\demo", busy=True) == "🟡 demo · n/a · work/demo"
    assert format_topic_title("demo", "/demo", busy=False, status="error").startswith("🔴 demo")


def test_title_is_truncated():
    title = format_topic_title("x" * 300, "/a/b", busy=False)

    assert len(title) == MAX_TITLE_LENGTH


def test_debouncer_limits_updates_per_topic():
    debouncer = TitleDebouncer(60)
    first, second = TopicKey(1, 1), TopicKey(1, 2)

    assert debouncer.should_update(first)
    assert not debouncer.should_update(first)
    assert debouncer.should_update(second)
    assert debouncer.should_update(first, force=True)

    debouncer.forget(first)
    assert debouncer.should_update(first)
