import unittest

from gateway.sandbox import (
    InMemorySandboxStore,
    SandboxEvaluator,
    is_flag,
    is_sub_path,
    normalize_path,
)


class TestSandboxPaths(unittest.TestCase):
    def setUp(self):
        self.sandbox = SandboxEvaluator(InMemorySandboxStore())
        self.sandbox.set_enabled(True)

    def test_sub_path_allowed(self):
        self.sandbox.add_path("/home/user/projects")

        self.assertTrue(self.sandbox.is_path_allowed("/home/user/projects"))
        self.assertTrue(self.sandbox.is_path_allowed("/home/user/projects/sub"))
        self.assertTrue(self.sandbox.is_path_allowed("/home/user/projects/sub/../other"))
        self.assertFalse(self.sandbox.is_path_allowed("/home/userbackup"))
        self.assertFalse(self.sandbox.is_path_allowed("/home/user/projects/../secrets"))
        self.assertFalse(self.sandbox.is_path_allowed(""))

    def test_disabled_sandbox_allows_everything(self):
        self.sandbox.set_enabled(False)
        self.assertTrue(self.sandbox.is_path_allowed("/etc/shadow"))
        self.assertEqual(self.sandbox.check_command_permission("rm -rf /"), (True, []))

    def test_remove_path(self):
        self.sandbox.add_path("/srv/data/")
        self.assertEqual(self.sandbox.allowed_paths(), ["/srv/data"])
        self.sandbox.remove_path("/srv/data")
        self.assertFalse(self.sandbox.is_path_allowed("/srv/data/file"))

    def test_windows_normalization(self):
        self.assertEqual(normalize_path("c:/Users/Dev/../Dev/code", windows=True), "C:\\Users\\Dev\\code")
        self.assertTrue(is_sub_path("C:\\Users\\Dev", "c:\\users\\dev\\Code\\x.txt", windows=True))
        self.assertFalse(is_sub_path("C:\\Users\\Dev", "C:\\Users\\Developer", windows=True))

    def test_posix_compare_keeps_case(self):
        self.assertFalse(is_sub_path("/home/user", "/HOME/USER", windows=False))
        self.assertFalse(is_sub_path("/home/user", "/home/User/notes.txt", windows=False))
        self.assertTrue(is_sub_path("/home/user", "/home/user/notes.txt", windows=False))
        self.assertFalse(is_sub_path("/home/user", "/home/userbackup", windows=False))

    def test_is_flag(self):
        for token in ("-rf", "--force", "/s", "/Y", "/?", "/d:2024-01-01"):
            self.assertTrue(is_flag(token), token)
        for token in ("/etc", "/home/user", "C:\\data"):
            self.assertFalse(is_flag(token), token)


class TestCommandPermission(unittest.TestCase):
    def setUp(self):
        self.sandbox = SandboxEvaluator.from_settings(True, ["/home/allowed"])

    def test_copy_into_blocked_directory(self):
        allowed, blocked = self.sandbox.check_command_permission(
            "cp /home/allowed/file.txt /home/blocked/file.txt"
        )
        self.assertFalse(allowed)
        self.assertIn("/home/blocked/file.txt", blocked)
        self.assertNotIn("/home/allowed/file.txt", blocked)

    def test_allowed_command(self):
        self.assertEqual(
            self.sandbox.check_command_permission("ls -la /home/allowed/src"),
            (True, []),
        )

    def test_extract_paths(self):
        extract = self.sandbox.extract_paths_from_command
        self.assertEqual(extract("rm -rf /tmp/build"), ["/tmp/build"])
        self.assertEqual(extract("echo hi >> /var/log/app.log"), ["/var/log/app.log"])
        self.assertIn("/opt/my app/notes.txt", extract('cat "/opt/my app/notes.txt"'))
        paths = extract("dir /s C:\\data")
        self.assertIn("C:\\data", paths)
        self.assertNotIn("/s", paths)

    def test_paths_deduplicated(self):
        self.assertEqual(
            self.sandbox.extract_paths_from_command("cat /etc/hosts && tail /etc/hosts"),
            ["/etc/hosts"],
        )
