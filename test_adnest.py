import io
import os
import shutil
import tempfile
import unittest
from unittest import mock

import adnest
import credcheck
import ldapaccess
from test_membership import FakeDirectory

SOURCE = ["-s", "LDAP://dc01.corp.local/DC=corp,DC=local"]


class TestAdnest(unittest.TestCase):
    def setUp(self):
        self.directory = FakeDirectory({"A": ["C", "B"], "B": ["A"], "X": ["B"]})
        patcher = mock.patch.object(adnest.datasource, "openDataSource", return_value=self.directory)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.out = io.StringIO()
        patcher = mock.patch("sys.stdout", self.out)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_table(self):
        self.assertEqual(adnest.main(["A"] + SOURCE), 0)
        lines = self.out.getvalue().splitlines()
        self.assertEqual(lines[0].split(), ["Index", "MembershipTree", "Status", "MembershipPath"])
        self.assertIn("Looping -> 0", lines[4])

    def test_raw(self):
        self.assertEqual(adnest.main(["A", "X", "--raw"] + SOURCE), 0)
        lines = self.out.getvalue().splitlines()
        self.assertTrue(lines[0].startswith("rootAccountName,index,"))
        # A: A, B, A, C; X: X, B, A, B, C
        self.assertEqual(len(lines), 10)
        self.assertTrue(lines[5].startswith("X,0,0,X,none,"))

    def test_objects_from_stdin(self):
        with mock.patch("sys.stdin", io.StringIO("A\n\nX\n")):
            self.assertEqual(adnest.main(["-", "-f", "csv"] + SOURCE), 0)
        roots = set(l.split(",")[0] for l in self.out.getvalue().splitlines()[1:])
        self.assertEqual(roots, {"A", "X"})

    def test_unknown_object_fails(self):
        with self.assertLogs(level="ERROR") as logs:
            self.assertEqual(adnest.main(["nobody"] + SOURCE), 1)
        self.assertIn("nobody", "\n".join(logs.output))
        self.assertEqual(self.out.getvalue(), "")

    def test_query_failure_reports_cause(self):
        def failing(obj, direction):
            raise ldapaccess.LDAPAccessException("Search failed: Can't contact LDAP server")
        self.directory.related = failing
        with self.assertLogs(level="ERROR") as logs:
            self.assertEqual(adnest.main(["A"] + SOURCE), 1)
        self.assertIn("Can't contact LDAP server", "\n".join(logs.output))

    def test_graph_needs_output(self):
        with mock.patch("sys.stderr", io.StringIO()):
            self.assertEqual(adnest.main(["A", "-f", "graph-dot"] + SOURCE), 2)

    def test_graph_dot_file(self):
        tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmpdir)
        path = os.path.join(tmpdir, "a.dot")
        self.assertEqual(adnest.main(["A", "-f", "graph-dot", "-o", path] + SOURCE), 0)
        with open(path) as f:
            text = f.read()
        self.assertIn("digraph", text)
        self.assertIn("indianred1", text)

    def test_output_file(self):
        tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmpdir)
        path = os.path.join(tmpdir, "a.csv")
        self.assertEqual(adnest.main(["A", "--raw", "-o", path] + SOURCE), 0)
        with open(path) as f:
            self.assertEqual(len(f.read().splitlines()), 5)

    def test_failed_walk_keeps_existing_output(self):
        tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmpdir)
        path = os.path.join(tmpdir, "old.csv")
        with open(path, "w") as f:
            f.write("previous results\n")
        with self.assertLogs(level="ERROR"):
            self.assertEqual(adnest.main(["nobody", "--raw", "-o", path] + SOURCE), 1)
        with open(path) as f:
            self.assertEqual(f.read(), "previous results\n")


class TestAdnestSource(unittest.TestCase):
    def test_malformed_source_uri(self):
        with self.assertLogs(level="ERROR") as logs:
            self.assertEqual(adnest.main(["A", "-s", "LDAPX:dc"]), 1)
        self.assertIn("Invalid LDAP URI", "\n".join(logs.output))


class TestCredcheck(unittest.TestCase):
    def test_valid(self):
        with mock.patch.object(credcheck, "testCredential", return_value=True) as test, \
                mock.patch("sys.stdout", io.StringIO()) as out:
            self.assertEqual(credcheck.main(["CORP\\bob", "-p", "pw"] + SOURCE), 0)
        test.assert_called_once_with(SOURCE[1], "CORP\\bob", "pw")
        self.assertEqual(out.getvalue().strip(), "VALID")

    def test_invalid_prompts_for_password(self):
        with mock.patch.object(credcheck, "testCredential", return_value=False), \
                mock.patch.object(credcheck.getpass, "getpass", return_value="typed") as prompt, \
                mock.patch("sys.stdout", io.StringIO()) as out:
            self.assertEqual(credcheck.main(["CORP\\bob"] + SOURCE), 1)
        self.assertTrue(prompt.called)
        self.assertEqual(out.getvalue().strip(), "INVALID")

    def test_unreachable(self):
        error = ldapaccess.LDAPAccessException("Can't connect")
        with mock.patch.object(credcheck, "testCredential", side_effect=error):
            with self.assertLogs(level="ERROR"):
                self.assertEqual(credcheck.main(["CORP\\bob", "-p", "pw"] + SOURCE), 2)


if __name__ == "__main__":
    unittest.main()
