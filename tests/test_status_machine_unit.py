import unittest

from digitizer.status_machine import is_allowed_transition, is_terminal


class StatusMachineUnitTests(unittest.TestCase):
    def test_terminal_statuses_are_sticky(self):
        self.assertFalse(is_allowed_transition("completed", "processing"))
        self.assertFalse(is_allowed_transition("completed", "failed"))
        self.assertFalse(is_allowed_transition("failed", "completed"))
        self.assertFalse(is_allowed_transition("failed", "pending"))

    def test_processing_can_transition_to_terminal(self):
        self.assertTrue(is_allowed_transition("processing", "completed"))
        self.assertTrue(is_allowed_transition("processing", "failed"))
        self.assertTrue(is_allowed_transition("processing", "processing"))

    def test_processing_never_goes_back_to_pending(self):
        self.assertFalse(is_allowed_transition("processing", "pending"))

    def test_pending_can_start_or_fail(self):
        self.assertTrue(is_allowed_transition("pending", "processing"))
        self.assertTrue(is_allowed_transition("pending", "failed"))
        self.assertFalse(is_allowed_transition("pending", "completed"))

    def test_new_record_starts_pending(self):
        self.assertTrue(is_allowed_transition(None, "pending"))
        self.assertFalse(is_allowed_transition(None, "processing"))

    def test_statuses_are_case_insensitive(self):
        self.assertTrue(is_allowed_transition("PROCESSING", "Completed"))
        self.assertTrue(is_terminal("FAILED"))

    def test_empty_target_is_allowed(self):
        self.assertTrue(is_allowed_transition("pending", ""))
        self.assertTrue(is_allowed_transition(None, None))

    def test_unknown_current_status_is_refused(self):
        self.assertFalse(is_allowed_transition("archived", "processing"))

    def test_is_terminal(self):
        self.assertTrue(is_terminal("completed"))
        self.assertTrue(is_terminal("failed"))
        self.assertFalse(is_terminal("pending"))
        self.assertFalse(is_terminal("processing"))
        self.assertFalse(is_terminal(None))


if __name__ == "__main__":
    unittest.main()
