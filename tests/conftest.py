import json
from collections import defaultdict

import pytest

from fleet_core.mission_message_defs import MessageKind
from fleet_core.task_graph import ExecutionStatus, TaskGraphEngine
from fleet_core.transport import MissionTransport
from fleet_core.utils.errors import MissionBuildError


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingTransport(MissionTransport):
    """Records publications and subscriptions without delivering anything."""

    def __init__(self):
        self.published = []
        self.subscriptions = defaultdict(list)

    def publish(self, channel, envelope):
        self.published.append((channel, envelope))

    def subscribe(self, channel, callback):
        self.subscriptions[channel].append(callback)

    def unsubscribe(self, channel, callback=None):
        if callback is None:
            self.subscriptions.pop(channel, None)
        elif callback in self.subscriptions.get(channel, []):
            self.subscriptions[channel].remove(callback)
            if not self.subscriptions[channel]:
                del self.subscriptions[channel]

    def sent(self, kind=None, channel=None):
        return [env for ch, env in self.published
                if (kind is None or env.kind == kind) and (channel is None or ch == channel)]

    def statuses(self):
        return [env.status for env in self.sent(MessageKind.STATUS)]


class FakeEngine(TaskGraphEngine):
    """Replays scripted step results; optionally rejects every build."""

    def __init__(self, results=(), build_error=None, step_error=None):
        self.results = list(results)
        self.build_error = build_error
        self.step_error = step_error
        self.builds = []
        self.step_calls = 0

    def build(self, graph_definition, required_plugins):
        self.builds.append((graph_definition, tuple(required_plugins)))
        if self.build_error:
            raise MissionBuildError(self.build_error)
        return {"graph": graph_definition}

    def step(self, handle):
        self.step_calls += 1
        if self.step_error:
            raise self.step_error
        if self.results:
            return self.results.pop(0)
        return ExecutionStatus.RUNNING


SIMPLE_GRAPH = json.dumps({"sequence": ["succeed"]})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return RecordingTransport()
