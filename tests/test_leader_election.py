"""Unit tests for the ConfigMap based leader elector."""

import json
import threading
from types import SimpleNamespace
from typing import List
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.rest import ApiException
from kubernetes.leaderelection import leaderelection
from kubernetes.leaderelection.leaderelectionrecord import LeaderElectionRecord

from ingress_status.cli import (
    LEADER_ELECTOR_COMPONENT,
    KubernetesLeaderElector,
    LeaderCallbacks,
    LeaderEventRecorder,
    ObservingLeaderElection,
    OwnedConfigMapLock,
    PodInfo,
    StartupError,
)


def make_callbacks(events: List[str]) -> LeaderCallbacks:
    return LeaderCallbacks(
        on_started_leading=lambda: events.append("started"),
        on_stopped_leading=lambda: events.append("stopped"),
        on_new_leader=lambda identity: events.append(f"leader:{identity}"),
    )


def make_elector(
    events: List[str], lease_duration: float = 30.0, event_recorder=None
) -> KubernetesLeaderElector:
    with patch("ingress_status.cli.OwnedConfigMapLock") as lock_cls:
        elector = KubernetesLeaderElector(
            lock_name="ingress-controller-leader-nginx",
            namespace="ingress",
            identity="ctrl-0",
            callbacks=make_callbacks(events),
            lease_duration=lease_duration,
            event_recorder=event_recorder,
        )
    lock_cls.assert_called_once_with(
        "ingress-controller-leader-nginx", "ingress", "ctrl-0", owner=None
    )
    return elector


class TestKubernetesLeaderElector:
    def test_lease_timings_derive_from_lease_duration(self) -> None:
        elector = make_elector([], lease_duration=30.0)

        cfg = elector._election_config
        assert cfg.lease_duration == 30.0
        assert cfg.renew_deadline == 15.0
        assert cfg.retry_period == 7.5

    def test_invalid_lease_is_startup_error(self) -> None:
        with pytest.raises(StartupError):
            make_elector([], lease_duration=0.5)

    def test_leadership_callbacks_track_state(self) -> None:
        events: List[str] = []
        elector = make_elector(events)
        assert elector.is_leader() is False

        elector._handle_started_leading()
        assert elector.is_leader() is True

        elector._handle_stopped_leading()
        assert elector.is_leader() is False
        assert events == ["started", "stopped"]

    def test_run_rejoins_election_until_stopped(self) -> None:
        elector = make_elector([])
        rounds: List[int] = []

        def fake_run(election: ObservingLeaderElection) -> None:
            rounds.append(1)
            if len(rounds) == 3:
                elector.stop()

        with patch.object(ObservingLeaderElection, "run", autospec=True, side_effect=fake_run):
            elector.run()

        assert len(rounds) == 3

    def test_stop_ends_run_while_waiting_for_the_lock(self) -> None:
        elector = make_elector([])

        with patch.object(
            leaderelection.LeaderElection, "try_acquire_or_renew", autospec=True, return_value=False
        ):
            runner = threading.Thread(target=elector.run, daemon=True)
            runner.start()
            elector.stop()
            runner.join(2)

        assert not runner.is_alive()
        assert elector.is_leader() is False

    def test_leadership_changes_are_recorded_as_events(self) -> None:
        recorder = MagicMock()
        elector = make_elector([], event_recorder=recorder)

        elector._handle_started_leading()
        elector._handle_stopped_leading()

        assert [c.args for c in recorder.record.call_args_list] == [
            ("LeaderElection", "ctrl-0 became leader"),
            ("LeaderElection", "ctrl-0 stopped leading"),
        ]


class TestObservingLeaderElection:
    def test_reports_each_new_holder_once(self) -> None:
        events: List[str] = []
        holders = iter(["ctrl-1", "ctrl-1", "ctrl-0"])

        def fake_try(self) -> bool:
            self.observed_record = SimpleNamespace(holder_identity=next(holders))
            return True

        election = ObservingLeaderElection(
            MagicMock(), lambda identity: events.append(identity)
        )
        with patch.object(
            leaderelection.LeaderElection, "try_acquire_or_renew", autospec=True, side_effect=fake_try
        ):
            for _ in range(3):
                assert election.try_acquire_or_renew() is True

        assert events == ["ctrl-1", "ctrl-0"]

    def test_no_report_without_observed_record(self) -> None:
        events: List[str] = []
        election = ObservingLeaderElection(MagicMock(), events.append)

        with patch.object(
            leaderelection.LeaderElection, "try_acquire_or_renew", autospec=True, return_value=False
        ):
            assert election.try_acquire_or_renew() is False

        assert events == []


class TestStoppedElection:
    def test_acquire_gives_up_once_stopped(self) -> None:
        stopped = threading.Event()
        config = MagicMock(retry_period=0.01)
        attempts: List[int] = []

        def fake_try(self) -> bool:
            attempts.append(1)
            stopped.set()
            return False

        election = ObservingLeaderElection(config, lambda identity: None, stopped)
        with patch.object(
            leaderelection.LeaderElection, "try_acquire_or_renew", autospec=True, side_effect=fake_try
        ):
            assert election.acquire() is False

        assert attempts == [1]

    def test_no_renewal_after_stop(self) -> None:
        stopped = threading.Event()
        stopped.set()
        election = ObservingLeaderElection(MagicMock(), lambda identity: None, stopped)

        with patch.object(
            leaderelection.LeaderElection, "try_acquire_or_renew", autospec=True
        ) as base:
            assert election.try_acquire_or_renew() is False

        base.assert_not_called()


class TestOwnedConfigMapLock:
    def make_lock(self, owner=None) -> OwnedConfigMapLock:
        lock = OwnedConfigMapLock(
            "ingress-controller-leader-nginx", "ingress", "ctrl-0", owner=owner
        )
        lock.api_instance = MagicMock()
        return lock

    def record(self) -> LeaderElectionRecord:
        return LeaderElectionRecord("ctrl-0", "30", "2026-01-01 00:00:00", "2026-01-01 00:00:00")

    def test_create_sets_pod_owner_reference(self) -> None:
        owner = PodInfo(name="ctrl-0", namespace="ingress", uid="uid-1")
        lock = self.make_lock(owner)

        assert lock.create("ingress-controller-leader-nginx", "ingress", self.record()) is True

        namespace, body = lock.api_instance.create_namespaced_config_map.call_args[0]
        assert namespace == "ingress"
        assert body.metadata.name == "ingress-controller-leader-nginx"
        [ref] = body.metadata.owner_references
        assert (ref.api_version, ref.kind, ref.name, ref.uid) == ("v1", "Pod", "ctrl-0", "uid-1")
        assert ref.block_owner_deletion is True
        assert ref.controller is True
        annotation = body.metadata.annotations[lock.leader_electionrecord_annotationkey]
        assert json.loads(annotation)["holderIdentity"] == "ctrl-0"

    def test_create_without_owner_uid_has_no_reference(self) -> None:
        lock = self.make_lock(PodInfo(name="ctrl-0", namespace="ingress"))

        lock.create("ingress-controller-leader-nginx", "ingress", self.record())

        body = lock.api_instance.create_namespaced_config_map.call_args[0][1]
        assert body.metadata.owner_references is None

    def test_create_failure_returns_false(self) -> None:
        lock = self.make_lock()
        lock.api_instance.create_namespaced_config_map.side_effect = ApiException(
            status=409, reason="AlreadyExists"
        )

        assert lock.create("ingress-controller-leader-nginx", "ingress", self.record()) is False


class TestLeaderEventRecorder:
    def test_records_event_on_lock_configmap(self) -> None:
        api = MagicMock()
        recorder = LeaderEventRecorder(
            namespace="ingress", lock_name="ingress-controller-leader-nginx", host="node-a", api=api
        )

        recorder.record("LeaderElection", "ctrl-0 became leader")

        namespace, event = api.create_namespaced_event.call_args[0]
        assert namespace == "ingress"
        assert event.involved_object.kind == "ConfigMap"
        assert event.involved_object.name == "ingress-controller-leader-nginx"
        assert event.reason == "LeaderElection"
        assert event.message == "ctrl-0 became leader"
        assert event.source.component == LEADER_ELECTOR_COMPONENT
        assert event.source.host == "node-a"

    def test_api_errors_do_not_propagate(self) -> None:
        api = MagicMock()
        api.create_namespaced_event.side_effect = ApiException(status=403, reason="Forbidden")
        recorder = LeaderEventRecorder(namespace="ingress", lock_name="lock", api=api)

        recorder.record("LeaderElection", "ctrl-0 became leader")

        api.create_namespaced_event.assert_called_once()
