from taskloop.events import (
    CompleteEvent,
    EventChannel,
    MessageEvent,
    ProgressEvent,
    TodoUpdateEvent,
)
from taskloop.models import TaskMessage, TaskResult, create_message_id, generate_task_id
from taskloop.sanitize import sanitize_assistant_text_for_display


def test_listener_filter_and_unsubscribe():
    channel = EventChannel()
    everything: list = []
    only_progress: list = []
    channel.subscribe(everything.append)
    unsubscribe = channel.subscribe(only_progress.append, ProgressEvent)

    channel.emit(ProgressEvent("loading", "Connecting..."))
    channel.emit(MessageEvent(TaskMessage(id="m1", content="hi")))
    unsubscribe()
    channel.emit(ProgressEvent("connecting"))

    assert len(everything) == 3
    assert [event.stage for event in only_progress] == ["loading"]
    assert channel.listener_count == 1


def test_failing_listener_does_not_block_others():
    channel = EventChannel()
    received: list = []

    def broken(event):
        raise ValueError("listener bug")

    channel.subscribe(broken)
    channel.subscribe(received.append)
    channel.emit(CompleteEvent(TaskResult(status="success", session_id="s")))

    assert received[0].status == "success"


def test_clear_drops_all_listeners():
    channel = EventChannel()
    received: list = []
    channel.subscribe(received.append)
    channel.clear()

    channel.emit(TodoUpdateEvent([]))

    assert received == []


def test_event_names_match_wire_names():
    assert TodoUpdateEvent.name == "todo:update"
    assert CompleteEvent.name == "complete"


def test_ids_have_expected_shape():
    task_id = generate_task_id()
    message_id = create_message_id()

    assert task_id.startswith("task_") and len(task_id.split("_")[2]) == 9
    assert message_id.startswith("msg_") and len(message_id.split("_")[2]) == 8


def test_sanitize_strips_reasoning_and_tool_markup():
    raw = "<think>secret</think>Hello\x07 <tool_call>{\"name\": \"x\"}</tool_call>\n\n\n\nworld"

    assert sanitize_assistant_text_for_display(raw) == "Hello \n\nworld"


def test_sanitize_hides_unterminated_think_block():
    assert sanitize_assistant_text_for_display("Answer <think>still reasoning") == "Answer"
    assert sanitize_assistant_text_for_display("") == ""
