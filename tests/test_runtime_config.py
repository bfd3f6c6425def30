#!/usr/bin/env python3
#
# tests/test_runtime_config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

import pytest

from certwarden.certs.runtime_config import ConfigManager, RuntimeConfig
from certwarden.errors import InvalidRequest


def test_defaults():
	cfg = RuntimeConfig()
	assert cfg.renewal_days_before == 30
	assert cfg.max_concurrent == 3
	assert cfg.batch_size == 10
	assert cfg.warning_days == 30
	assert cfg.critical_days == 7


def test_update_persists_and_notifies(db_path):
	manager = ConfigManager(db_path)
	manager.load()
	seen = []
	manager.subscribe(lambda old, new: seen.append((old.max_concurrent, new.max_concurrent)))

	manager.update({"max_concurrent": 5, "scheduler_interval_hours": 6})

	assert manager.current.max_concurrent == 5
	assert seen == [(3, 5)]
	reloaded = ConfigManager(db_path)
	assert reloaded.load().scheduler_interval_hours == 6


@pytest.mark.parametrize(
	"changes",
	[
		{"no_such_key": 1},
		{"max_concurrent": 0},
		{"batch_size": 0},
		{"warning_days": 5, "critical_days": 10},
		{"admin_emails": ["not-an-email"]},
	],
)
def test_invalid_updates_are_rejected_atomically(config, changes):
	before = config.current
	with pytest.raises(InvalidRequest):
		config.update(changes)
	assert config.current == before


def test_listener_failure_does_not_break_update(config):
	def broken(old, new):
		raise RuntimeError("boom")

	config.subscribe(broken)
	assert config.update({"batch_size": 20}).batch_size == 20


def test_snapshots_are_immutable(config):
	snapshot = config.current
	with pytest.raises(Exception):
		snapshot.batch_size = 99
	config.update({"batch_size": 2})
	assert snapshot.batch_size == 10
