import pytest

from evalgrid.errors import ConfigError
from evalgrid.loader import load_config
from evalgrid.models import FilePart, PipelinePrompt, ProviderSpec

CONFIG = """
description: Translation smoke test
providers:
  - openai:gpt-4o-mini
  - id: anthropic:claude-sonnet-4-0
    config:
      temperature: 0
prompts:
  - "Translate to French: {{ text }}"
  - - system: You are a translator.
    - user: "{{ text }}"
  - $pipeline:
      - prompt: "Draft: {{ text }}"
        outputAs: draft
      - deps: [draft]
        if: "history | length < 2"
        prompt: "Improve: {{ draft }}"
        outputAs: draft
defaultTest:
  assert:
    - type: contains
      vars:
        needle: le
tests:
  - description: cheese
    vars:
      text: cheese
      notes: file:///notes.txt
      picture: file:///cat.png
    assert:
      - type: llm-rubric
        vars:
          rubric: Is French
"""


def write(tmp_path, text=CONFIG):
    path = tmp_path / "eval.yaml"
    path.write_text(text, encoding="utf-8")
    (tmp_path / "notes.txt").write_text("be formal", encoding="utf-8")
    (tmp_path / "cat.png").write_bytes(b"\x89PNG\r\n")
    return path


def test_loads_full_config(tmp_path):
    config = load_config(write(tmp_path))

    assert config.description == "Translation smoke test"
    assert config.providers[0] == "openai:gpt-4o-mini"
    assert isinstance(config.providers[1], ProviderSpec)
    assert config.providers[1].config == {"temperature": 0}
    assert config.prompts[1] == [{"system": "You are a translator."}, {"user": "{{ text }}"}]
    assert isinstance(config.prompts[2], PipelinePrompt)
    assert config.prompts[2].pipeline[1].if_ == "history | length < 2"
    assert config.default_test.assert_[0].type == "contains"
    assert config.tests[0].assert_[0].vars == {"rubric": "Is French"}


def test_resolves_file_variables(tmp_path):
    test = load_config(write(tmp_path)).tests[0]

    assert test.vars["text"] == "cheese"
    assert test.vars["notes"] == "be formal"
    picture = test.vars["picture"]
    assert isinstance(picture, FilePart)
    assert picture.name == "cat.png"
    assert picture.mime_type == "image/png"
    assert picture.data == b"\x89PNG\r\n"


def test_missing_referenced_file(tmp_path):
    path = write(tmp_path, CONFIG.replace("notes.txt", "missing.txt"))
    with pytest.raises(ConfigError, match="missing.txt"):
        load_config(path)


@pytest.mark.parametrize(
    "text",
    [
        "providers: [unclosed",
        "- just\n- a list\n",
        "providers: openai:gpt-4o\n",
        "prompts:\n  - $pipeline: []\n",
    ],
)
def test_invalid_configs(tmp_path, text):
    with pytest.raises(ConfigError):
        load_config(write(tmp_path, text))


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "nope.yaml")
