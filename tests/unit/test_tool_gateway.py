import pytest

from cua_orchestrator.conversation.blocks import ImageBlock, ToolUseBlock
from cua_orchestrator.memory.store import MemoryStore
from cua_orchestrator.providers.browser import BrowserProviderError
from cua_orchestrator.storage.memory import InMemoryStorage
from cua_orchestrator.tools.gateway import ToolExecutor


def _executor(browser, **kwargs) -> ToolExecutor:
    return ToolExecutor(
        browser=browser,
        browser_handle="browser-1",
        memory_store=MemoryStore(InMemoryStorage()),
        sleep=lambda _seconds: None,
        **kwargs,
    )


def _use(name: str, tool_id: str = "tu_1", **tool_input) -> ToolUseBlock:
    return ToolUseBlock(id=tool_id, name=name, input=tool_input)


def test_screenshot_returns_text_and_image(browser) -> None:
    outcome = _executor(browser).execute(_use("computer", action="screenshot"))

    text, image = outcome.result.content
    assert text.text == "Screenshot taken"
    assert isinstance(image, ImageBlock)
    assert image.source.media_type == "image/png"
    assert image.source.data
    assert outcome.reported_status is None


def test_pointer_and_keyboard_actions_reach_the_browser(browser) -> None:
    executor = _executor(browser, typing_delay_ms=25)

    executor.execute(_use("computer", action="double_click", coordinate=[3, 4]))
    executor.execute(_use("computer", action="type", text="hello"))
    executor.execute(_use("computer", action="key", text="Return"))
    executor.execute(
        _use(
            "computer", action="scroll", coordinate=[1, 2], scroll_direction="up", scroll_amount=5
        )
    )

    assert browser.actions == [
        ("double_click", "browser-1", (3, 4)),
        ("type", "browser-1", ("hello", 25)),
        ("key", "browser-1", ("Return",)),
        ("scroll", "browser-1", (1, 2, "up", 5)),
    ]


@pytest.mark.parametrize(
    "tool_input",
    [
        {"action": "left_click"},
        {"action": "type"},
        {"action": "teleport"},
        {"action": "left_click", "coordinate": [1]},
    ],
)
def test_invalid_computer_input_is_an_error_result(browser, tool_input) -> None:
    outcome = _executor(browser).execute(_use("computer", **tool_input))

    assert outcome.result.is_error
    assert outcome.result.tool_use_id == "tu_1"
    assert browser.actions == []


def test_browser_failures_propagate(browser_factory) -> None:
    browser = browser_factory(fail_actions={"left_click"})

    with pytest.raises(BrowserProviderError):
        _executor(browser).execute(_use("computer", action="left_click", coordinate=[1, 1]))


def test_report_status_is_captured(browser) -> None:
    outcome = _executor(browser).execute(
        _use("report_task_status", status="needs_clarification", message="Which one?")
    )

    assert not outcome.result.is_error
    assert outcome.result.content[0].text == "Status recorded: needs_clarification"
    assert outcome.reported_status.status == "needs_clarification"


def test_invalid_report_and_unknown_tool_are_error_results(browser) -> None:
    executor = _executor(browser)

    bad_report = executor.execute(_use("report_task_status", status="done", message="x"))
    unknown = executor.execute(_use("bash", command="ls"))

    assert bad_report.result.is_error
    assert bad_report.reported_status is None
    assert unknown.result.is_error
    assert "Unknown tool" in unknown.result.content[0].text
