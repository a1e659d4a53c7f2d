import itertools
import tempfile
import threading
from pathlib import Path

from luna_core.agents.chat_agent import DEBUG_TITLE, ChatOrchestrator
from luna_core.agents.notices import EDIT_DEFAULT_TEXT, VIDEO_PENDING, failure_text
from luna_core.agents.streaming import TurnState
from luna_core.api.service import create_orchestrator
from luna_core.domain.conversation import Attachment, Message, Persona
from luna_core.domain.exceptions import ApiError, NetworkError
from luna_core.domain.models import ChatResult, GeneratedImage, GroundingChunk, Part, VideoOperation
from luna_core.infrastructure.storage.json_store import JsonHistoryStore
from luna_core.prompts import load_system_prompt
from luna_core.sessions.store import SessionStore


class MemoryBackend:
    def __init__(self):
        self.records = {}

    def load(self, key):
        return self.records.get(key)

    def save(self, key, data):
        self.records[key] = data

    def delete(self, key):
        self.records.pop(key, None)


class FakeChat:
    def __init__(self, owner):
        self._owner = owner

    def send_stream(self, parts):
        self._owner.sent.append(list(parts))
        # 可调用项在两个增量之间执行，用于模拟用户在流式过程中的操作
        for item in self._owner.fragments:
            if callable(item):
                item()
            elif isinstance(item, Exception):
                raise item
            else:
                yield item


class FakeClient:
    name = "fake"

    def __init__(self):
        self.fragments = ["Hello", " world"]
        self.opened = []
        self.sent = []
        self.title_prompts = []
        self.title_reply = '"Greeting"'
        self.edit_parts = [Part(text="Bluer now"), Part(inline_data=None)]
        self.errors = {}
        self.calls = []

    def _call(self, op):
        self.calls.append(op)
        if op in self.errors:
            raise self.errors[op]

    def open_chat(self, history, system_instruction):
        self._call("open_chat")
        self.opened.append((tuple(history), system_instruction))
        return FakeChat(self)

    def generate_text(self, prompt):
        self._call("generate_text")
        self.title_prompts.append(prompt)
        return self.title_reply

    def generate_image(self, prompt):
        self._call("generate_image")
        return GeneratedImage(mime_type="image/jpeg", data="QUJD")

    def edit_image(self, prompt, attachment):
        self._call("edit_image")
        return ChatResult(model="image-edit", parts=list(self.edit_parts))

    def search(self, query):
        self._call("search")
        return ChatResult(
            model="search",
            parts=[Part(text="Paris is the capital.")],
            grounding_chunks=[GroundingChunk(uri="https://a.example", title="A")],
        )

    def start_video(self, prompt):
        self._call("start_video")
        return VideoOperation(name="operations/v1")

    def get_video_operation(self, name):
        self._call("get_video_operation")
        return VideoOperation(name=name, done=True, video_uri="https://files/v.mp4")

    def download(self, uri):
        self._call("download")
        return b"MP4"


def make_orchestrator(client=None, identity=None, backend=None, **kw):
    ticks = itertools.count(1000)
    store = SessionStore(backend or MemoryBackend(), identity=identity, clock=lambda: next(ticks))
    kw.setdefault("run_in_background", lambda job: job())
    return ChatOrchestrator(
        store,
        client if client is not None else FakeClient(),
        video_sleep=lambda s: None,
        video_interval=0,
        video_max_polls=3,
        **kw,
    )


def texts(messages):
    return [(m.role, m.text) for m in messages]


# ---- 流式对话 ----

def test_send_grows_session_by_two_and_streams_into_placeholder():
    client = FakeClient()
    o = make_orchestrator(client)

    assert o.send_message("hi")

    assert texts(o.messages) == [("user", "hi"), ("model", "Hello world")]
    assert not o.is_loading
    assert o.last_turn.state == TurnState.SUCCEEDED
    assert client.opened[0][0] == ()
    assert client.sent[0][0].text == "hi"


def test_first_message_generates_title():
    client = FakeClient()
    o = make_orchestrator(client)
    o.send_message("hi there")

    assert o.chat_history.active.title == "Greeting"
    assert 'starting with: "hi there"' in client.title_prompts[0]

    o.send_message("second")
    assert len(client.title_prompts) == 1


def test_stop_keeps_partial_text_and_drops_later_fragments():
    client = FakeClient()
    o = make_orchestrator(client)
    client.fragments = ["Hel", "lo", o.stop_generation, " world"]

    assert not o.send_message("hi")

    assert o.messages[-1].text == "Hello"
    assert o.last_turn.state == TurnState.STOPPED
    assert not o.is_loading

    client.fragments = ["again"]
    assert o.send_message("next")
    assert o.messages[-1].text == "again"


def test_stream_failure_replaces_placeholder_with_error():
    client = FakeClient()
    o = make_orchestrator(client)
    client.fragments = ["par", NetworkError(code="NETWORK_ERROR", message="reset")]

    assert not o.send_message("hi")

    assert len(o.messages) == 2
    assert o.messages[-1].text == failure_text("sending message")
    assert o.last_turn.state == TurnState.FAILED
    assert not o.is_loading


def test_open_chat_failure_is_reported_in_session():
    client = FakeClient()
    client.errors["open_chat"] = ApiError(code="API_ERROR", message="bad request")
    o = make_orchestrator(client)

    assert not o.send_message("hi")
    assert texts(o.messages) == [("user", "hi"), ("model", failure_text("sending message"))]


def test_send_while_generating_is_rejected():
    client = FakeClient()
    o = make_orchestrator(client)
    nested = []
    client.fragments = ["a", lambda: nested.append((o.is_loading, o.send_message("x"))), "b"]

    assert o.send_message("hi")

    assert nested == [(True, False)]
    assert texts(o.messages) == [("user", "hi"), ("model", "ab")]


def test_switching_chat_mid_stream_drops_late_fragments():
    client = FakeClient()
    o = make_orchestrator(client)
    first = o.active_chat_id
    client.fragments = ["a", o.start_new_chat, "b"]

    o.send_message("hi")

    assert o.active_chat_id != first
    assert o.messages == ()
    assert o.switch_chat(first)
    assert texts(o.messages) == [("user", "hi"), ("model", "a")]


def test_deleting_chat_mid_stream_leaves_fresh_session():
    client = FakeClient()
    o = make_orchestrator(client)
    first = o.active_chat_id
    client.fragments = ["a", lambda: o.delete_chat(first), "b"]

    o.send_message("hi")

    assert first not in o.chat_history.sessions
    assert o.messages == ()
    assert len(o.sessions()) == 1


# ---- 重新生成 ----

def test_regenerate_replaces_last_answer_only():
    client = FakeClient()
    o = make_orchestrator(client)
    client.fragments = ["a1"]
    o.send_message("q1")
    client.fragments = ["a2"]
    o.send_message("q2")

    client.fragments = ["a2-bis"]
    assert o.regenerate_last_response()

    assert texts(o.messages) == [("user", "q1"), ("model", "a1"), ("user", "q2"), ("model", "a2-bis")]
    history, _ = client.opened[-1]
    assert texts(history) == [("user", "q1"), ("model", "a1")]
    assert client.sent[-1][0].text == "q2"


def test_regenerate_reattaches_image():
    client = FakeClient()
    o = make_orchestrator(client)
    o.send_message("what is this", Attachment(mime_type="image/png", data="AAAA"))
    assert o.messages[0].image_url == "data:image/png;base64,AAAA"

    assert o.regenerate_last_response()

    parts = client.sent[-1]
    assert parts[0].text == "what is this"
    assert parts[1].inline_data.mime_type == "image/png"
    assert parts[1].inline_data.data == "AAAA"
    assert len(o.messages) == 2


def test_regenerate_without_user_turn_is_noop():
    client = FakeClient()
    o = make_orchestrator(client)
    assert not o.regenerate_last_response()
    assert client.calls == []
    assert o.messages == ()


# ---- 访客限额 ----

def test_guest_locked_after_limit_but_regeneration_still_works():
    client = FakeClient()
    o = make_orchestrator(client, guest_limit=2)
    assert o.send_message("one")
    assert not o.is_locked
    assert o.send_message("two")
    assert o.is_locked

    opened = len(client.opened)
    assert not o.send_message("three")
    assert not o.generate_image("cat")
    assert len(o.messages) == 4
    assert len(client.opened) == opened

    assert o.regenerate_last_response()
    assert len(o.messages) == 4


def test_authenticated_user_never_locked():
    o = make_orchestrator(identity="alice", guest_limit=2)
    for i in range(4):
        assert o.send_message(f"m{i}")
    assert not o.is_locked
    assert len(o.messages) == 8


def test_login_switches_to_user_history():
    o = make_orchestrator(guest_limit=1)
    o.send_message("guest")
    assert o.is_locked

    o.set_identity("bob")
    assert o.is_authenticated
    assert o.messages == ()
    assert not o.is_locked


# ---- 初始化失败 ----

def test_setup_failure_appends_one_notice_per_operation():
    store = SessionStore(MemoryBackend())
    o = ChatOrchestrator(store, None, setup_error="GEMINI_API_KEY environment variable is not set")

    assert not o.send_message("hi")
    assert texts(o.messages) == [("model", "AI client failed to initialize: GEMINI_API_KEY environment variable is not set")]

    assert not o.generate_image("cat")
    assert len(o.messages) == 2
    assert all(m.role == "model" for m in o.messages)


def test_create_orchestrator_without_key_enters_setup_failure():
    class Cfg:
        gemini_api_key = None
        http_timeout = 1.0
        storage_root = ".storage"
        default_assistant_version = "1.0"
        guest_message_limit = 5
        video_poll_interval = 0.0
        video_max_polls = 2

    o = create_orchestrator(cfg=Cfg(), backend=MemoryBackend())
    assert o.setup_error == "GEMINI_API_KEY environment variable is not set"
    o.search_query("anything")
    assert o.messages[-1].text.startswith("AI client failed to initialize")


# ---- 动作 ----

def test_generate_image_action():
    o = make_orchestrator()
    assert o.generate_image("a cat")

    user, model = o.messages
    assert user.text == 'Imagine: "a cat"'
    assert user.label == "a cat"
    assert model.image_url == "data:image/jpeg;base64,QUJD"
    assert o.chat_history.active.title == "Greeting"


def test_edit_image_action_defaults_text():
    client = FakeClient()
    client.edit_parts = [Part(text=""), Part(inline_data=Attachment(mime_type="image/png", data="UE5H").to_inline_data())]
    o = make_orchestrator(client)

    assert o.edit_image("make it blue", Attachment(mime_type="image/png", data="AAAA"))

    assert o.messages[0].text == 'Edit Image: "make it blue"'
    assert o.messages[-1].text == EDIT_DEFAULT_TEXT
    assert o.messages[-1].image_url == "data:image/png;base64,UE5H"


def test_edit_image_without_returned_image_fails():
    client = FakeClient()
    client.edit_parts = [Part(text="I cannot do that")]
    o = make_orchestrator(client)

    assert not o.edit_image("make it blue", Attachment(mime_type="image/png", data="AAAA"))
    assert o.messages[-1].text == failure_text('Edit Image: "make it blue"')
    assert o.messages[-1].image_url is None


def test_search_action_keeps_citations():
    o = make_orchestrator()
    assert o.search_query("capital of france")

    model = o.messages[-1]
    assert model.text == "Paris is the capital."
    assert model.grounding_chunks == (GroundingChunk(uri="https://a.example", title="A"),)
    assert o.messages[0].text == 'Search: "capital of france"'


def test_video_action_reports_progress_then_result():
    client = FakeClient()
    o = make_orchestrator(client)
    seen = []
    o.subscribe(lambda history: seen.append(history.active.messages[-1].text if history.active.messages else None))

    assert o.generate_video("a sunset")

    assert VIDEO_PENDING in seen
    model = o.messages[-1]
    assert model.text == 'Here is your generated video for: "a sunset"'
    assert model.video_url == "data:video/mp4;base64,TVA0"


def test_action_failure_replaces_placeholder():
    client = FakeClient()
    client.errors["generate_image"] = ApiError(code="API_ERROR", message="quota")
    o = make_orchestrator(client)

    assert not o.generate_image("a cat")
    assert len(o.messages) == 2
    assert o.messages[-1].text == failure_text('Imagine: "a cat"')
    assert not o.is_loading


# ---- 模板入口 / 版本 / 人设 ----

def test_study_topic_shows_topic_as_label():
    client = FakeClient()
    o = make_orchestrator(client)
    o.study_topic("photosynthesis")

    user = o.messages[0]
    assert user.label == "photosynthesis"
    assert "photosynthesis" in user.text and user.text != "photosynthesis"
    assert 'starting with: "photosynthesis"' in client.title_prompts[0]


def test_code_assistant_sends_rendered_prompt():
    client = FakeClient()
    o = make_orchestrator(client)
    o.code_assistant("  print('x')  ")

    assert o.messages[0].label == "print('x')"
    assert "print('x')" in client.sent[0][0].text


def test_version_switch_starts_new_chat_and_changes_instruction():
    client = FakeClient()
    o = make_orchestrator(client, assistant_version="1.0")
    first = o.active_chat_id

    o.set_assistant_version("2.0")
    assert o.active_chat_id != first
    assert o.assistant_version == "2.0"

    o.send_message("hi")
    assert client.opened[-1][1] == load_system_prompt("2.0")

    o.set_assistant_version("9.9")
    assert o.assistant_version == "2.0"


def test_persona_prompt_used_as_instruction():
    client = FakeClient()
    o = make_orchestrator(client)
    o.set_persona(Persona(id="p1", name="Pirate", prompt="Talk like a pirate."))
    o.send_message("hi")
    assert client.opened[-1][1] == "Talk like a pirate."

    o.set_persona(None)
    o.send_message("hi again")
    assert client.opened[-1][1] == load_system_prompt(o.assistant_version)


def test_debug_session_uses_fixed_title_and_v2_instruction():
    client = FakeClient()
    o = make_orchestrator(client, assistant_version="1.0")
    first = o.active_chat_id

    assert o.start_debug_session("x is undefined", stack="at f()")

    assert o.active_chat_id != first
    assert o.chat_history.active.title == DEBUG_TITLE
    assert o.messages[0].label == "Debug: x is undefined"
    assert "x is undefined" in o.messages[0].text
    assert client.opened[-1][1] == load_system_prompt("2.0")
    assert client.title_prompts == []


# ---- 持久化 ----

def test_history_survives_restart():
    with tempfile.TemporaryDirectory() as d:
        backend = JsonHistoryStore(root=Path(d))
        o = make_orchestrator(identity="carol", backend=backend)
        o.send_message("remember me")
        chat_id = o.active_chat_id

        again = make_orchestrator(identity="carol", backend=backend)
        assert again.active_chat_id == chat_id
        assert texts(again.messages) == [("user", "remember me"), ("model", "Hello world")]


# ---- 并发与边界 ----

def test_title_crash_does_not_break_send():
    client = FakeClient()
    client.errors["generate_text"] = ValueError("Expecting value: line 1 column 1 (char 0)")
    o = make_orchestrator(client)

    assert o.send_message("hi")

    assert texts(o.messages) == [("user", "hi"), ("model", "Hello world")]
    assert o.chat_history.active.title == "New Chat"


def test_send_from_other_thread_cannot_slip_into_regeneration():
    client = FakeClient()
    o = make_orchestrator(client)
    client.fragments = ["a1"]
    o.send_message("q1")
    client.fragments = ["a2"]
    o.send_message("q2")

    store = o._store
    truncate = store.mutate_messages
    concurrent = []

    def racing_mutate(session_id, fn):
        # 另一个工作线程恰好在截断之前发送消息
        if not concurrent:
            worker = threading.Thread(target=lambda: concurrent.append(o.send_message("q3")))
            worker.start()
            worker.join()
        return truncate(session_id, fn)

    store.mutate_messages = racing_mutate
    client.fragments = ["a2-bis"]
    assert o.regenerate_last_response()

    assert concurrent == [False]
    assert texts(o.messages) == [("user", "q1"), ("model", "a1"), ("user", "q2"), ("model", "a2-bis")]
    assert not o.is_loading


def test_regenerate_during_stream_is_rejected_without_truncating():
    client = FakeClient()
    o = make_orchestrator(client)
    client.fragments = ["a1"]
    o.send_message("q1")

    nested = []
    client.fragments = ["a", lambda: nested.append(o.regenerate_last_response()), "b"]
    o.send_message("q2")

    assert nested == [False]
    assert texts(o.messages) == [("user", "q1"), ("model", "a1"), ("user", "q2"), ("model", "ab")]


def test_regenerate_with_setup_failure_keeps_previous_answer():
    store = SessionStore(MemoryBackend())
    sid = store.active.id
    store.append(sid, Message(role="user", text="q"), Message(role="model", text="answer"))
    o = ChatOrchestrator(store, None, setup_error="GEMINI_API_KEY looks malformed (too short)")

    assert not o.regenerate_last_response()

    assert texts(o.messages) == [
        ("user", "q"),
        ("model", "answer"),
        ("model", "AI client failed to initialize: GEMINI_API_KEY looks malformed (too short)"),
    ]


def test_malformed_key_enters_setup_failure():
    class Cfg:
        gemini_api_key = "abc"
        http_timeout = 1.0
        storage_root = ".storage"
        default_assistant_version = "1.0"
        guest_message_limit = 5
        video_poll_interval = 0.0
        video_max_polls = 2

    o = create_orchestrator(cfg=Cfg(), backend=MemoryBackend())
    assert o.setup_error == "GEMINI_API_KEY looks malformed (too short)"
    assert not o.send_message("hi")
    assert not o.generate_image("cat")
    assert [m.text for m in o.messages] == [
        "AI client failed to initialize: GEMINI_API_KEY looks malformed (too short)",
    ] * 2


def test_debug_session_not_created_while_generating():
    client = FakeClient()
    o = make_orchestrator(client)
    nested = []
    client.fragments = ["a", lambda: nested.append(o.start_debug_session("boom")), "b"]

    o.send_message("hi")

    assert nested == [False]
    assert len(o.sessions()) == 1
    assert all(s.title != DEBUG_TITLE for s in o.sessions())
