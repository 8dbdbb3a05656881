import unittest

from scan_server import pose_protocol


class PoseProtocolTests(unittest.TestCase):
    def test_sequence_order_and_progress(self) -> None:
        poses = [step.pose for step in pose_protocol.POSE_SEQUENCE]
        self.assertEqual(poses, ["center", "left", "right", "up", "down", "center"])
        progress = [step.progress for step in pose_protocol.POSE_SEQUENCE]
        self.assertEqual(progress, [0, 20, 40, 60, 80, 100])

    def test_pose_step_out_of_range(self) -> None:
        self.assertEqual(pose_protocol.pose_step(5).name, "Center Again")
        with self.assertRaises(IndexError):
            pose_protocol.pose_step(6)
        with self.assertRaises(IndexError):
            pose_protocol.pose_step(-1)

    def test_labels_pad_with_additional_angle(self) -> None:
        labels = pose_protocol.pose_labels(7)
        self.assertEqual(labels[0], "center (forward-facing)")
        self.assertEqual(labels[5], "center again (forward-facing)")
        self.assertEqual(labels[6], pose_protocol.ADDITIONAL_ANGLE_LABEL)

    def test_label_for_pose(self) -> None:
        self.assertEqual(pose_protocol.label_for_pose("LEFT"), "looking left (left profile)")
        self.assertEqual(pose_protocol.label_for_pose("sideways"), pose_protocol.ADDITIONAL_ANGLE_LABEL)

    def test_is_valid_pose(self) -> None:
        self.assertTrue(pose_protocol.is_valid_pose("Up"))
        self.assertFalse(pose_protocol.is_valid_pose("tilt"))
        self.assertFalse(pose_protocol.is_valid_pose(None))


if __name__ == "__main__":
    unittest.main()
