"""Tests for the routing rule tables."""

import json

import pytest

from agentchat.agents.classifier_agent import ClassifierAgent
from agentchat.models.errors import InvalidInput
from agentchat.rules.loader import load_rules


def write_rules(tmp_path, data):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
    return str(path)


def minimal_rules(**overrides):
    data = {
        "intent_rules": [
            {"intent": "greeting", "confidence": 0.9, "priority": "low",
             "keywords": ["Hello", "Привет"]}
        ],
        "context": {
            "document_keywords": ["pdf"],
            "history_keywords": ["earlier"],
            "agent_task_keywords": ["expert in"],
            "technical_keywords": ["code"],
            "rag_retention_keywords": ["pdf"],
            "history_retention_keywords": ["earlier"]
        },
        "ticket": {"rules": []}
    }
    data.update(overrides)
    return data


def test_default_rules_keep_evaluation_order(rules):
    intents = [rule.intent for rule in rules.intent_rules]

    assert intents == ["urgent_support", "technical_support",
                       "document_question", "research_request",
                       "feature_request", "bug_report"]


def test_keywords_are_lowercased_on_load(tmp_path):
    rules = load_rules(write_rules(tmp_path, minimal_rules()))

    assert rules.intent_rules[0].keywords == ["hello", "привет"]


def test_replacement_rules_drive_the_classifier(tmp_path):
    classifier = ClassifierAgent(load_rules(write_rules(tmp_path,
                                                        minimal_rules())))

    assert classifier.classify("ПРИВЕТ!").intent == "greeting"
    assert classifier.classify("bug").intent == "general"


def test_missing_file_raises_invalid_input(tmp_path):
    with pytest.raises(InvalidInput):
        load_rules(str(tmp_path / "missing.json"))


def test_malformed_json_raises_invalid_input(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(InvalidInput):
        load_rules(str(path))


def test_rule_without_outcome_is_rejected(tmp_path):
    data = minimal_rules(intent_rules=[{"intent": "broken",
                                        "keywords": ["x"]}])

    with pytest.raises(InvalidInput):
        load_rules(write_rules(tmp_path, data))


def test_unknown_priority_is_rejected(tmp_path):
    data = minimal_rules(intent_rules=[{"intent": "odd", "confidence": 0.5,
                                        "priority": "whenever",
                                        "keywords": ["x"]}])

    with pytest.raises(InvalidInput):
        load_rules(write_rules(tmp_path, data))
