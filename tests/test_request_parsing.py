"""Tests for argument extraction from free-text requests."""

from __future__ import annotations

import pytest

from mithril.ai.orchestration.request_parsing import (
    clean_generated_content,
    extract_command,
    filename_from_message,
    filename_from_reply,
    folder_name_from_message,
)


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("run `npm run build` please", "npm run build"),
        ('execute "make test"', "make test"),
        ("pip install requests for me", "pip install requests"),
        ("git status", "git status"),
        ("install the project dependencies", "npm install"),
        ("start it with docker run nginx", "docker run nginx"),
        ("what is the weather like", None),
        ("", None),
    ],
)
def test_extract_command(message: str, expected: str | None) -> None:
    assert extract_command(message) == expected


def test_filename_from_message() -> None:
    assert filename_from_message("create a file called app.py") == "app.py"
    assert filename_from_message("add styles.css for the page.") == "styles.css"
    assert filename_from_message("make a landing page") is None


def test_filename_from_reply() -> None:
    assert filename_from_reply('"index.html"') == "index.html"
    assert filename_from_reply("Sure! `todo.js` would work") == "todo.js"
    assert filename_from_reply("no idea") is None


def test_folder_name_from_message() -> None:
    assert folder_name_from_message("create a folder called components") == "components"
    assert folder_name_from_message("make directory assets") == "assets"
    assert folder_name_from_message("create a utils folder") == "utils"
    assert folder_name_from_message("create a new folder") is None


def test_clean_generated_content() -> None:
    fenced = "Here you go:\n```js\nconst a = 1;\n```\nand\n```js\nconst b = 2;\nconst c = 3;\n```"
    bare = "Sure, here is the file.\n# Title\nBody"

    assert clean_generated_content(fenced) == "const b = 2;\nconst c = 3;\n"
    assert clean_generated_content(bare) == "# Title\nBody\n"
    assert clean_generated_content("") == ""
