from pathlib import Path
import math
import tempfile
import unittest
from unittest import mock

import numpy as np

from avatar_factory import EYE_HEIGHT, HEAD_Y, LEG_Y, NECK_Y, TOTAL_HEIGHT, write_avatar
from immersive_scaler import measurements as ms
from immersive_scaler.bone_config import FALLBACKS
from immersive_scaler.scaler import ScalingParameters
from immersive_scaler.skeleton import Avatar


def _load(tmpdir, **kwargs):
    return Avatar.load(str(write_avatar(Path(tmpdir) / "avatar.glb", **kwargs)))


class HeightTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.avatar = _load(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_mesh_heights(self) -> None:
        self.assertAlmostEqual(ms.lowest_point(self.avatar), 0.0, places=5)
        self.assertAlmostEqual(ms.highest_point(self.avatar), TOTAL_HEIGHT, places=5)
        self.assertAlmostEqual(ms.total_height(self.avatar), TOTAL_HEIGHT, places=5)

    def test_bone_based_floor_uses_lowest_joint(self) -> None:
        # Toes sit 3 cm above the floor
        self.assertAlmostEqual(ms.lowest_point(self.avatar, bone_based=True), 0.03, places=5)

    def test_eye_height_from_view_point(self) -> None:
        self.assertAlmostEqual(ms.eye_height(self.avatar), EYE_HEIGHT, places=5)
        self.assertAlmostEqual(ms.height_by_method(self.avatar, "eye_height"), EYE_HEIGHT, places=5)

    def test_eye_height_falls_back_to_eye_bones_then_head(self) -> None:
        self.avatar.view_offset = None
        self.assertAlmostEqual(ms.eye_height(self.avatar), EYE_HEIGHT, places=5)
        del self.avatar.humanoid["leftEye"]
        del self.avatar.humanoid["rightEye"]
        self.assertAlmostEqual(ms.eye_height(self.avatar), HEAD_Y, places=5)

    def test_floor_to_neck_and_head(self) -> None:
        self.assertAlmostEqual(ms.floor_to_neck(self.avatar), NECK_Y, places=5)
        self.assertAlmostEqual(ms.floor_to_head(self.avatar), HEAD_Y, places=5)

    def test_unknown_height_method(self) -> None:
        with self.assertRaises(ValueError):
            ms.height_by_method(self.avatar, "shoulder_height")

    def test_measurements_follow_edits(self) -> None:
        self.avatar.scales[self.avatar.avatar_root] *= 2.0
        self.assertAlmostEqual(ms.total_height(self.avatar), 2 * TOTAL_HEIGHT, places=5)


class UpperBodyTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.avatar = _load(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_lengths(self) -> None:
        self.assertAlmostEqual(ms.upper_leg_height(self.avatar), LEG_Y, places=5)
        self.assertAlmostEqual(ms.upper_body_length(self.avatar), NECK_Y - LEG_Y, places=5)
        self.assertAlmostEqual(ms.leg_to_head(self.avatar), HEAD_Y - LEG_Y, places=5)

    def test_ratio_variants(self) -> None:
        self.assertAlmostEqual(ms.upper_body_ratio(self.avatar, True, True),
                               (NECK_Y - LEG_Y) / NECK_Y, places=5)
        self.assertAlmostEqual(ms.upper_body_ratio(self.avatar, False, False),
                               (HEAD_Y - LEG_Y) / HEAD_Y, places=5)
        self.assertAlmostEqual(ms.upper_body_ratio(self.avatar, False, True),
                               (NECK_Y - LEG_Y) / HEAD_Y, places=5)
        self.assertAlmostEqual(ms.upper_body_portion(self.avatar),
                               (EYE_HEIGHT - LEG_Y) / EYE_HEIGHT, places=5)

    def test_by_params_selects_legacy(self) -> None:
        params = ScalingParameters(upper_body_use_legacy=True)
        self.assertAlmostEqual(ms.upper_body_by_params(self.avatar, params),
                               ms.upper_body_portion(self.avatar), places=9)

    def test_missing_neck_falls_back(self) -> None:
        del self.avatar.humanoid["neck"]
        with self.assertLogs("immersive_scaler.measurements", level="WARNING"):
            self.assertEqual(ms.upper_body_length(self.avatar), 0.0)
            self.assertEqual(ms.upper_body_ratio(self.avatar), FALLBACKS["upper_body_ratio"])


class ArmTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.avatar = _load(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_arm_measurements(self) -> None:
        self.assertAlmostEqual(ms.arm_length(self.avatar), 0.50, places=5)
        self.assertAlmostEqual(ms.shoulder_to_fingertip(self.avatar), 0.635, places=5)
        self.assertAlmostEqual(ms.center_to_hand(self.avatar), 0.62, places=5)
        self.assertAlmostEqual(ms.center_to_fingertip(self.avatar), 0.755, places=5)
        self.assertAlmostEqual(ms.fingertip_to_fingertip(self.avatar), 1.51, places=5)
        self.assertAlmostEqual(ms.head_to_elbow_vrc(self.avatar), math.hypot(0.38, 0.15), places=5)
        self.assertAlmostEqual(ms.head_to_hand(self.avatar), math.hypot(0.62, 0.15), places=5)

    def test_head_to_elbow_ignores_arm_pose(self) -> None:
        # Let the right forearm hang down: the theoretical T-pose elbow is unchanged
        before = ms.head_to_elbow_vrc(self.avatar)
        lower = self.avatar.bone("rightLowerArm")
        self.avatar.translations[lower] = [0.0, -0.26, 0.0]
        self.assertAlmostEqual(ms.head_to_elbow_vrc(self.avatar), before, places=6)

    def test_arm_direction(self) -> None:
        self.assertEqual(ms.arm_direction(self.avatar, "right"), -1.0)
        self.assertEqual(ms.arm_direction(self.avatar, "left"), 1.0)

    def test_arm_direction_vertical_arm_uses_body_side(self) -> None:
        for side in ("left", "right"):
            self.avatar.translations[self.avatar.bone(f"{side}LowerArm")] = [0.0, -0.26, 0.0]
        self.assertEqual(ms.arm_direction(self.avatar, "right"), -1.0)
        self.assertEqual(ms.arm_direction(self.avatar, "left"), 1.0)

    def test_arm_direction_degenerate_defaults_to_negative_x(self) -> None:
        self.avatar.translations[self.avatar.bone("leftLowerArm")] = [0.0, -0.26, 0.0]
        self.avatar.translations[self.avatar.bone("leftShoulder")] = [0.0, 0.08, 0.0]
        self.avatar.translations[self.avatar.bone("leftUpperArm")] = [0.0, 0.0, 0.0]
        self.assertEqual(ms.arm_direction(self.avatar, "left"), -1.0)

    def test_reach_at_one_is_the_measurement(self) -> None:
        for method in ms.ARM_METHODS:
            for scale_hand in (False, True):
                reach = ms.arm_reach(self.avatar, method, scale_hand)
                self.assertAlmostEqual(reach.at(1.0), ms.arm_by_method(self.avatar, method),
                                       places=9, msg=method)

    def test_reach_solve(self) -> None:
        reach = ms.arm_reach(self.avatar, "head_to_elbow_vrc")
        scale = reach.solve(0.6)
        self.assertGreater(scale, 1.0)
        self.assertAlmostEqual(reach.at(scale), 0.6, places=9)
        self.assertAlmostEqual(reach.solve(reach.at(1.0)), 1.0, places=9)

    def test_reach_solve_clamps_unreachable_target(self) -> None:
        reach = ms.ArmReach(np.array([0.0, -0.15, 0.0]), np.array([-0.3, 0.0, 0.0]))
        with self.assertLogs("immersive_scaler.measurements", level="WARNING"):
            self.assertAlmostEqual(reach.solve(0.1), 0.0, places=9)

    def test_arm_ratio(self) -> None:
        expected = math.hypot(0.38, 0.15) / (EYE_HEIGHT - 0.005)
        self.assertAlmostEqual(ms.arm_to_height_ratio(self.avatar), expected, places=5)
        self.assertAlmostEqual(ms.current_scaling(self.avatar), expected, places=5)
        self.assertAlmostEqual(ms.simple_arm_ratio(self.avatar), 0.50 / TOTAL_HEIGHT, places=5)
        self.assertAlmostEqual(ms.center_hand_to_eye_ratio(self.avatar), 0.62 / EYE_HEIGHT, places=5)

    def test_missing_arm_falls_back(self) -> None:
        del self.avatar.humanoid["rightUpperArm"]
        with self.assertLogs("immersive_scaler.measurements", level="WARNING"):
            self.assertIsNone(ms.arm_reach(self.avatar, "arm_length"))
            self.assertEqual(ms.arm_length(self.avatar), 0.0)
            self.assertEqual(ms.arm_to_height_ratio(self.avatar), FALLBACKS["arm_ratio"])

    def test_unknown_arm_method(self) -> None:
        with self.assertRaises(ValueError):
            ms.arm_reach(self.avatar, "elbow_to_knee")


class ProportionTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.avatar = _load(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_thigh_percentage(self) -> None:
        self.assertAlmostEqual(ms.thigh_percentage(self.avatar), 0.42 / 0.82, places=5)

    def test_unscaled_thickness_is_fallback(self) -> None:
        self.assertEqual(ms.current_arm_thickness(self.avatar), FALLBACKS["thickness"])

    def test_thickness_from_local_scale(self) -> None:
        # Length 0.5 on X, cross 0.8 on Y/Z: 0.8 = t + 0.5 * (1 - t) -> t = 0.6
        self.avatar.scales[self.avatar.bone("rightUpperArm")] = [0.5, 0.8, 0.8]
        self.assertAlmostEqual(ms.current_arm_thickness(self.avatar), 0.6, places=9)


class RegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.avatar = _load(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_measure_all(self) -> None:
        report = ms.measure_all(self.avatar, ScalingParameters())
        self.assertTrue(set(ms.MEASUREMENTS) <= set(report))
        self.assertIn("upper_body_selected", report)
        self.assertAlmostEqual(report["eye_height"], EYE_HEIGHT, places=5)

    def test_measure_all_skins_the_mesh_once(self) -> None:
        with mock.patch.object(self.avatar, "_skin", wraps=self.avatar._skin) as skin:
            ms.measure_all(self.avatar, ScalingParameters())
        self.assertEqual(skin.call_count, 1)

    def test_edits_after_a_report_are_seen(self) -> None:
        ms.measure_all(self.avatar)
        self.avatar.scales[self.avatar.avatar_root] *= 2.0
        self.assertAlmostEqual(ms.total_height(self.avatar), 2.0 * TOTAL_HEIGHT, places=5)

    def test_fixed_pose_follows_pose_changes(self) -> None:
        with self.avatar.fixed_pose():
            before = ms.highest_point(self.avatar)
            self.avatar.scales[self.avatar.avatar_root] *= 0.5
            self.assertAlmostEqual(ms.highest_point(self.avatar), 0.5 * before, places=5)

    def test_measure_all_rejects_unknown_key(self) -> None:
        with self.assertRaises(KeyError):
            ms.measure_all(self.avatar, keys=["wingspan"])

    def test_segments(self) -> None:
        (start, end, role), = ms.measurement_segments(self.avatar, "eye_height")
        self.assertEqual(role, "measurement")
        self.assertAlmostEqual(end[1] - start[1], EYE_HEIGHT, places=5)

        segments = ms.measurement_segments(self.avatar, "head_to_elbow_vrc")
        self.assertAlmostEqual(np.linalg.norm(segments[0][1] - segments[0][0]),
                               ms.head_to_elbow_vrc(self.avatar), places=9)

        for key in ms.MEASUREMENTS:
            for start, end, role in ms.measurement_segments(self.avatar, key):
                self.assertIn(role, ("measurement", "reference"))


if __name__ == "__main__":
    unittest.main()
