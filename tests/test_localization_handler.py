"""
Integration tests for the localization handler.

Tests cover:
- 6-DoF mode with and without estimator-side anchoring
- Baseframe initialization and the LOCALIZED transition
- Structure-constraint mode through the reprojection gate
- Demotion after quality rejection and re-initialization
- Inactive camera fallback
- Pending localization queue
- Clock alignment
"""

import logging

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from violoc_core.localization import (
    ActiveSensorMap,
    BaseframeEstimatorConfig,
    ClockAligner,
    CorrectionOutcome,
    LocalizationHandler,
    LocalizationHandlerConfig,
    LocalizationState,
    ReprojectionGateConfig,
    create_default_handler,
    seconds_to_nanoseconds,
)
from violoc_core.metrics import get_metrics
from violoc_core.proto import EstimatorStatus, PoseSample, Transformation
from tests.conftest import (
    RecordingEstimator,
    build_matches,
    empty_matches,
    make_observation,
    make_pose,
)


def _feed(handler, samples):
    for sample in samples:
        handler.process_pose(sample)


def _localize(handler, sample, T_G_M, camera=None, offset=None, cameras=(0, 1)):
    """
    Localize at a trajectory sample.
    
    Args:
        sample: Estimator pose sample giving the true body pose
        camera: If given, attach exact matches for the listed cameras
        offset: Optional body-frame error of the reported pose
    """
    T_G_B = T_G_M * sample.T_M_I
    if offset is not None:
        T_G_B = T_G_B * offset
    
    matches = []
    if camera is not None:
        for cam_idx in range(2):
            matches.append(
                build_matches(T_G_B, camera) if cam_idx in cameras else empty_matches()
            )
    return handler.process_localization(make_observation(sample.timestamp_ns, T_G_B, matches))


def _initialize(handler, trajectory, T_G_M, camera=None):
    """Feed the trajectory and complete the baseframe fit."""
    _feed(handler, trajectory)
    outcomes = [_localize(handler, trajectory[i], T_G_M, camera) for i in (10, 11)]
    assert outcomes == [CorrectionOutcome.INITIALIZATION_PENDING, CorrectionOutcome.INITIALIZED]


@pytest.fixture
def handler_6dof(recording_estimator) -> LocalizationHandler:
    """6-DoF mode handler that initializes its own baseframe."""
    return LocalizationHandler(recording_estimator, config=LocalizationHandlerConfig(
        estimator_handles_anchoring=False,
        baseframe=BaseframeEstimatorConfig(ransac_seed=0),
    ))


@pytest.fixture
def handler_structure(recording_estimator, camera_rig) -> LocalizationHandler:
    """Structure-constraint mode handler with both cameras active."""
    return LocalizationHandler(recording_estimator, camera_rig, config=LocalizationHandlerConfig(
        use_6dof_localization=False,
        baseframe=BaseframeEstimatorConfig(ransac_seed=0),
    ))


# =============================================================================
# Test 6-DoF Mode
# =============================================================================


class TestSixDofMode:
    """Tests for direct pose updates."""
    
    def test_estimator_anchoring_starts_localized(self, recording_estimator):
        """Test that the default handler applies localizations immediately."""
        handler = LocalizationHandler(recording_estimator)
        T_G_B = make_pose(15.0, (1.0, 2.0, 0.0))
        
        outcome = handler.process_localization(make_observation(1000, T_G_B))
        
        assert handler.state == LocalizationState.LOCALIZED
        assert outcome == CorrectionOutcome.CORRECTION_ACCEPTED
        assert len(recording_estimator.pose_updates) == 1
        assert recording_estimator.pose_updates[0].timestamp_ns == 1000
        assert get_metrics().get_counter('localizations_applied') == 1
    
    def test_initialization_transitions_once(self, handler_6dof, recording_estimator, trajectory, T_G_M):
        """Test that a successful fit switches to LOCALIZED exactly once."""
        assert handler_6dof.state == LocalizationState.UNINITIALIZED
        
        _initialize(handler_6dof, trajectory, T_G_M)
        
        assert handler_6dof.state == LocalizationState.LOCALIZED
        assert handler_6dof.state_machine.transition_count == 1
        assert handler_6dof.baseframe.T_G_M.is_close(T_G_M, 1e-6, 1e-6)
        assert handler_6dof.baseframe.num_inliers == 2
        assert recording_estimator.pose_updates == []
        
        for i in range(12, 20):
            assert _localize(handler_6dof, trajectory[i], T_G_M) == CorrectionOutcome.CORRECTION_ACCEPTED
        
        assert handler_6dof.state_machine.transition_count == 1
        assert len(recording_estimator.pose_updates) == 8
    
    def test_localization_ahead_of_poses(self, handler_6dof, trajectory, T_G_M):
        """Test that a localization newer than the pose history is dropped."""
        _feed(handler_6dof, trajectory[:10])
        
        outcome = _localize(handler_6dof, trajectory[20], T_G_M)
        
        assert outcome == CorrectionOutcome.POSE_NOT_YET_AVAILABLE
        assert len(handler_6dof.baseframe_estimator.candidates) == 0
        assert handler_6dof.num_pending == 0
    
    def test_gravity_check(self, recording_estimator, trajectory, T_G_M):
        """Test that a tilted localization is rejected when the check is on."""
        handler = LocalizationHandler(recording_estimator, config=LocalizationHandlerConfig(
            estimator_handles_anchoring=False,
            gate=ReprojectionGateConfig(max_gravity_misalignment_deg=5.0),
        ))
        _initialize(handler, trajectory, T_G_M)
        tilt = Transformation.from_rotation(Rotation.from_euler('x', 10.0, degrees=True))
        
        assert _localize(handler, trajectory[20], T_G_M, offset=tilt) == CorrectionOutcome.CORRECTION_REJECTED
        assert _localize(handler, trajectory[21], T_G_M) == CorrectionOutcome.CORRECTION_ACCEPTED
        assert get_metrics().get_drop_count('gravity_misaligned') == 1
    
    def test_gravity_check_without_baseframe_warns(self, recording_estimator, caplog):
        """Test that a gravity check the estimator-anchored mode cannot reach is reported."""
        with caplog.at_level(logging.WARNING):
            handler = LocalizationHandler(recording_estimator, config=LocalizationHandlerConfig(
                gate=ReprojectionGateConfig(max_gravity_misalignment_deg=5.0),
            ))
        
        assert handler.baseframe is None
        assert 'Gravity check configured' in caplog.text
    
    def test_no_gravity_warning_when_initializing(self, recording_estimator, caplog):
        with caplog.at_level(logging.WARNING):
            LocalizationHandler(recording_estimator, config=LocalizationHandlerConfig(
                estimator_handles_anchoring=False,
                gate=ReprojectionGateConfig(max_gravity_misalignment_deg=5.0),
            ))
        
        assert 'Gravity check configured' not in caplog.text
    
    def test_estimator_failure_is_rejection(self):
        """Test that an estimator exception does not escape the handler."""
        class Failing(RecordingEstimator):
            def ingest_pose_update(self, update):
                raise RuntimeError("busy")
        
        handler = LocalizationHandler(Failing())
        
        outcome = handler.process_localization(make_observation(0, make_pose()))
        
        assert outcome == CorrectionOutcome.CORRECTION_REJECTED
        assert get_metrics().get_drop_count('estimator_rejected') == 1


# =============================================================================
# Test Structure Mode
# =============================================================================


class TestStructureMode:
    """Tests for 2D-3D structure-constraint corrections."""
    
    def test_consistent_localization_applied(
        self, handler_structure, recording_estimator, pinhole_camera, trajectory, T_G_M
    ):
        """Test that gated matches reach the estimator per active camera."""
        _initialize(handler_structure, trajectory, T_G_M, pinhole_camera)
        
        outcome = _localize(handler_structure, trajectory[20], T_G_M, pinhole_camera)
        
        assert outcome == CorrectionOutcome.CORRECTION_ACCEPTED
        assert [u[0] for u in recording_estimator.correspondence_updates] == [0, 1]
        assert recording_estimator.pose_updates == []
    
    def test_quality_rejection_demotes(
        self, handler_structure, recording_estimator, pinhole_camera, trajectory, T_G_M
    ):
        """Test LOCALIZED -> NOT_LOCALIZED -> LOCALIZED on a bad localization."""
        _initialize(handler_structure, trajectory, T_G_M, pinhole_camera)
        first_baseframe = handler_structure.baseframe
        lateral = Transformation(position=(2.0, 0.0, 0.0))
        
        outcome = _localize(handler_structure, trajectory[20], T_G_M, pinhole_camera, offset=lateral)
        
        assert outcome == CorrectionOutcome.CORRECTION_REJECTED
        assert handler_structure.state == LocalizationState.NOT_LOCALIZED
        assert handler_structure.baseframe is first_baseframe
        assert recording_estimator.correspondence_updates == []
        assert get_metrics().get_drop_count('reprojection_rejected') == 1
        
        outcomes = [_localize(handler_structure, trajectory[i], T_G_M) for i in (30, 31)]
        
        assert outcomes == [CorrectionOutcome.INITIALIZATION_PENDING, CorrectionOutcome.INITIALIZED]
        assert handler_structure.state == LocalizationState.LOCALIZED
        assert handler_structure.state_machine.transition_count == 2
        assert handler_structure.baseframe is not first_baseframe
    
    def test_rejection_without_demotion(self, recording_estimator, camera_rig, pinhole_camera, trajectory, T_G_M):
        handler = LocalizationHandler(recording_estimator, camera_rig, config=LocalizationHandlerConfig(
            use_6dof_localization=False,
            demote_on_quality_reject=False,
        ))
        _initialize(handler, trajectory, T_G_M, pinhole_camera)
        lateral = Transformation(position=(2.0, 0.0, 0.0))
        
        outcome = _localize(handler, trajectory[20], T_G_M, pinhole_camera, offset=lateral)
        
        assert outcome == CorrectionOutcome.CORRECTION_REJECTED
        assert handler.state == LocalizationState.LOCALIZED
    
    def test_estimator_rejection_keeps_state(self, camera_rig, pinhole_camera, trajectory, T_G_M):
        """Test that an estimator-side rejection is not a quality rejection."""
        estimator = RecordingEstimator(accept_correspondences=False)
        handler = LocalizationHandler(estimator, camera_rig, config=LocalizationHandlerConfig(
            use_6dof_localization=False,
        ))
        _initialize(handler, trajectory, T_G_M, pinhole_camera)
        
        outcome = _localize(handler, trajectory[20], T_G_M, pinhole_camera)
        
        assert outcome == CorrectionOutcome.CORRECTION_REJECTED
        assert handler.state == LocalizationState.LOCALIZED
        assert len(estimator.correspondence_updates) == 2
    
    def test_only_inactive_cameras_dropped(self, recording_estimator, camera_rig, pinhole_camera, trajectory, T_G_M):
        """Test that matches of inactive cameras alone are not applied by default."""
        handler = LocalizationHandler(
            recording_estimator, camera_rig, ActiveSensorMap([(0, 0)]),
            LocalizationHandlerConfig(use_6dof_localization=False),
        )
        _initialize(handler, trajectory, T_G_M)
        
        outcome = _localize(handler, trajectory[20], T_G_M, pinhole_camera, cameras=(1,))
        
        assert outcome == CorrectionOutcome.CORRECTION_REJECTED
        assert handler.state == LocalizationState.LOCALIZED
        assert get_metrics().get_drop_count('no_active_correspondences') == 1
        assert recording_estimator.pose_updates == []
    
    def test_inactive_cameras_fallback(self, recording_estimator, camera_rig, pinhole_camera, trajectory, T_G_M):
        """Test the optional 6-DoF fallback for inactive-camera matches."""
        handler = LocalizationHandler(
            recording_estimator, camera_rig, ActiveSensorMap([(0, 0)]),
            LocalizationHandlerConfig(
                use_6dof_localization=False,
                use_6dof_for_inactive_cameras=True,
            ),
        )
        _initialize(handler, trajectory, T_G_M)
        
        outcome = _localize(handler, trajectory[20], T_G_M, pinhole_camera, cameras=(1,))
        
        assert outcome == CorrectionOutcome.CORRECTION_ACCEPTED
        assert len(recording_estimator.pose_updates) == 1
        assert recording_estimator.correspondence_updates == []


# =============================================================================
# Test Pending Queue
# =============================================================================


class TestPendingQueue:
    """Tests for the optional pending localization queue."""
    
    @pytest.fixture
    def handler_queue(self, recording_estimator) -> LocalizationHandler:
        return LocalizationHandler(recording_estimator, config=LocalizationHandlerConfig(
            estimator_handles_anchoring=False,
            buffer_pending_observations=True,
            max_pending_observations=2,
        ))
    
    def test_queued_until_pose_arrives(self, handler_queue, trajectory, T_G_M):
        """Test that a localization waits for the pose stream to catch up."""
        _feed(handler_queue, trajectory[:11])
        
        assert _localize(handler_queue, trajectory[15], T_G_M) == CorrectionOutcome.QUEUED
        assert handler_queue.num_pending == 1
        
        _feed(handler_queue, trajectory[11:16])
        
        # Pose thread only extends the history
        assert handler_queue.num_pending == 1
        assert len(handler_queue.baseframe_estimator.candidates) == 0
        
        assert _localize(handler_queue, trajectory[12], T_G_M) == CorrectionOutcome.INITIALIZED
        assert handler_queue.baseframe.T_G_M.is_close(T_G_M, 1e-6, 1e-6)
    
    def test_process_pending(self, handler_queue, trajectory, T_G_M):
        """Test draining the queue without a new localization."""
        _feed(handler_queue, trajectory[:11])
        _localize(handler_queue, trajectory[13], T_G_M)
        _localize(handler_queue, trajectory[15], T_G_M)
        
        assert handler_queue.process_pending() == []
        
        _feed(handler_queue, trajectory[11:14])
        processed = handler_queue.process_pending()
        
        assert [outcome for _, outcome in processed] == [CorrectionOutcome.INITIALIZATION_PENDING]
        assert processed[0][0].timestamp_ns == trajectory[13].timestamp_ns
        assert handler_queue.num_pending == 1
        
        _feed(handler_queue, trajectory[14:16])
        processed = handler_queue.process_pending()
        
        assert [outcome for _, outcome in processed] == [CorrectionOutcome.INITIALIZED]
        assert handler_queue.num_pending == 0
    
    def test_covered_localization_processed_immediately(self, handler_queue, trajectory, T_G_M):
        _feed(handler_queue, trajectory)
        
        assert _localize(handler_queue, trajectory[10], T_G_M) == CorrectionOutcome.INITIALIZATION_PENDING
    
    def test_queue_overflow_drops_oldest(self, handler_queue, trajectory, T_G_M):
        _feed(handler_queue, trajectory[:5])
        
        for i in (20, 21, 22):
            assert _localize(handler_queue, trajectory[i], T_G_M) == CorrectionOutcome.QUEUED
        
        assert handler_queue.num_pending == 2
        assert get_metrics().get_drop_count('queue_full') == 1


# =============================================================================
# Test Handler Utilities
# =============================================================================


class TestHandlerUtilities:
    """Tests for clock alignment, reset, diagnostics and factory."""
    
    def test_clock_alignment(self, recording_estimator):
        """Test that localization timestamps are mapped into estimator time."""
        handler = LocalizationHandler(
            recording_estimator,
            clock_aligner=ClockAligner(offset_ns=seconds_to_nanoseconds(2.0)),
        )
        
        handler.process_localization(make_observation(seconds_to_nanoseconds(1.0), make_pose()))
        
        assert recording_estimator.pose_updates[0].timestamp_ns == seconds_to_nanoseconds(3.0)
    
    def test_clock_alignment_for_initialization(self, handler_6dof, trajectory, T_G_M):
        """Test that a shifted localization clock still finds the right pose."""
        handler_6dof.clock_aligner = ClockAligner(offset_ns=-seconds_to_nanoseconds(1.0))
        _feed(handler_6dof, trajectory)
        
        for i in (10, 11):
            sample = trajectory[i]
            T_G_B = T_G_M * sample.T_M_I
            t_foreign = sample.timestamp_ns + seconds_to_nanoseconds(1.0)
            outcome = handler_6dof.process_localization(make_observation(t_foreign, T_G_B))
        
        assert outcome == CorrectionOutcome.INITIALIZED
        assert handler_6dof.baseframe.T_G_M.is_close(T_G_M, 1e-6, 1e-6)
    
    def test_epoch_timestamps_initialize(self, handler_6dof, T_G_M):
        """Test initialization at stored pose times on an epoch-nanosecond clock."""
        t0_ns = 1_700_000_000_000_000_200
        samples = [
            PoseSample(t0_ns + k * 100_000_000, make_pose(2.0 * k, (0.5 * k, 0.0, 0.0)))
            for k in range(5)
        ]
        _feed(handler_6dof, samples)
        
        outcomes = [
            handler_6dof.process_localization(
                make_observation(sample.timestamp_ns, T_G_M * sample.T_M_I)
            )
            for sample in samples[3:]
        ]
        
        assert outcomes == [CorrectionOutcome.INITIALIZATION_PENDING, CorrectionOutcome.INITIALIZED]
        assert handler_6dof.baseframe.timestamp_ns == samples[4].timestamp_ns
        assert handler_6dof.baseframe.T_G_M.is_close(T_G_M, 1e-6, 1e-6)
        
        lookup = handler_6dof.pose_buffer.lookup(samples[4].timestamp_ns)
        assert lookup.T_M_I == samples[4].T_M_I
        assert not lookup.interpolated
    
    def test_reset(self, handler_6dof, trajectory, T_G_M, caplog):
        _initialize(handler_6dof, trajectory, T_G_M)
        
        with caplog.at_level(logging.INFO):
            handler_6dof.reset()
        
        assert handler_6dof.state == LocalizationState.UNINITIALIZED
        assert handler_6dof.baseframe is None
        assert len(handler_6dof.pose_buffer) == 0
        assert 'METRICS SUMMARY' in caplog.text
        assert get_metrics().get_counter('localization_handler_resets') == 1
    
    def test_statistics(self, handler_6dof, trajectory, T_G_M):
        _initialize(handler_6dof, trajectory, T_G_M)
        
        stats = handler_6dof.get_statistics()
        
        assert stats['state'] == 'LOCALIZED'
        assert stats['localizations_in'] == 2
        assert stats['baseframe_initializations'] == 1
        assert stats['num_poses_buffered'] == len(trajectory)
        assert stats['num_candidates'] == 0
        np.testing.assert_allclose(stats['baseframe']['position'], T_G_M.position, atol=1e-6)
        assert stats['measurements_dropped'] == 0
        assert stats['drop_rate_pct'] == 0.0
        assert stats['drop_reasons'] == {}
        assert stats['uptime_s'] >= 0.0
    
    def test_statistics_drop_rate(self, handler_6dof, trajectory):
        """Test that drops are reported against poses and localizations in."""
        _feed(handler_6dof, trajectory[:3])
        handler_6dof.process_pose(trajectory[0])
        
        stats = handler_6dof.get_statistics()
        
        assert stats['measurements_dropped'] == 1
        assert stats['drop_reasons'] == {'out_of_order': 1}
        assert stats['drop_rate_pct'] == pytest.approx(100.0 / 3.0)
    
    def test_estimator_status_is_diagnostic_only(self, recording_estimator, trajectory, T_G_M):
        """Test that the reported estimator status does not change the state."""
        recording_estimator.status = EstimatorStatus(initialized=True, localized=True, T_G_M=T_G_M)
        handler = LocalizationHandler(recording_estimator, config=LocalizationHandlerConfig(
            estimator_handles_anchoring=False,
        ))
        
        status = handler.log_estimator_status()
        
        assert status.localized
        assert handler.state == LocalizationState.UNINITIALIZED
        
        _initialize(handler, trajectory, T_G_M)
        handler.log_estimator_status()
        
        assert handler.state == LocalizationState.LOCALIZED
    
    def test_create_default_handler(self, recording_estimator, camera_rig):
        """Test the factory for both modes."""
        handler_6dof = create_default_handler(recording_estimator)
        handler_structure = create_default_handler(
            recording_estimator, camera_rig, use_6dof_localization=False
        )
        
        assert handler_6dof.state == LocalizationState.LOCALIZED
        assert handler_structure.state == LocalizationState.UNINITIALIZED
        assert handler_structure.active_sensor_map.is_active(1)
