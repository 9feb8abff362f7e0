import os
import shutil
import tempfile
import unittest
import xml.etree.ElementTree as ET

import gppadmin

EXISTING = """<?xml version="1.0" encoding="utf-8"?>
<Groups clsid="{3125E937-EB16-4b4c-9934-544FC6D24D26}">
  <Group clsid="{6D4A79E4-529C-4481-ABD0-F5BD7EA93BA7}" name="Administrators (built-in)" image="2" changed="2020-01-01 00:00:00" uid="{11111111-2222-3333-4444-555555555555}">
    <Properties action="U" newName="" description="" deleteAllUsers="0" deleteAllGroups="0" removeAccounts="0" groupSid="S-1-5-32-544" groupName="Administrators (built-in)">
      <Members>
        <Member name="CORP\\Helpdesk" action="ADD" sid="S-1-5-21-1-2-3-1201"/>
      </Members>
    </Properties>
    <Filters>
      <FilterComputer bool="AND" not="0" type="NETBIOS" name="PC01"/>
    </Filters>
  </Group>
</Groups>
"""


class TestAddLocalAdmin(unittest.TestCase):
    def setUp(self):
        self.dir = tempfile.mkdtemp()
        self.path = os.path.join(self.dir, "Groups.xml")

    def tearDown(self):
        shutil.rmtree(self.dir)

    def _groups(self):
        return ET.parse(self.path).getroot().findall("Group")

    def test_new_file(self):
        self.assertTrue(gppadmin.addLocalAdmin(self.path, "PC02", "CORP\\bob", "S-1-5-21-1-2-3-1105"))
        root = ET.parse(self.path).getroot()
        self.assertEqual(root.tag, "Groups")
        self.assertEqual(root.get("clsid"), gppadmin.GROUPS_CLSID)
        (group,) = root.findall("Group")
        self.assertEqual(group.find("Properties").get("groupSid"), "S-1-5-32-544")
        self.assertEqual(group.find("Filters/FilterComputer").get("name"), "PC02")
        members = group.findall("Properties/Members/Member")
        self.assertEqual([(m.get("name"), m.get("action"), m.get("sid")) for m in members],
                         [("CORP\\bob", "ADD", "S-1-5-21-1-2-3-1105")])
        self.assertRegex(group.get("uid"), r"^\{[0-9A-F-]{36}\}$")

    def test_existing_group_for_machine(self):
        with open(self.path, "w") as f:
            f.write(EXISTING)
        self.assertTrue(gppadmin.addLocalAdmin(self.path, "pc01", "CORP\\bob"))
        (group,) = self._groups()
        self.assertEqual([m.get("name") for m in group.findall("Properties/Members/Member")],
                         ["CORP\\Helpdesk", "CORP\\bob"])
        self.assertNotEqual(group.get("changed"), "2020-01-01 00:00:00")
        self.assertEqual(group.get("uid"), "{11111111-2222-3333-4444-555555555555}")

    def test_other_machine_gets_own_group(self):
        with open(self.path, "w") as f:
            f.write(EXISTING)
        gppadmin.addLocalAdmin(self.path, "PC02", "CORP\\bob")
        groups = self._groups()
        self.assertEqual([g.find("Filters/FilterComputer").get("name") for g in groups], ["PC01", "PC02"])

    def test_already_granted(self):
        with open(self.path, "w") as f:
            f.write(EXISTING)
        self.assertFalse(gppadmin.addLocalAdmin(self.path, "PC01", "corp\\helpdesk"))
        with open(self.path) as f:
            self.assertEqual(f.read(), EXISTING)

    def test_malformed(self):
        with open(self.path, "w") as f:
            f.write("<Groups><Group>")
        with self.assertRaises(gppadmin.GPPError):
            gppadmin.addLocalAdmin(self.path, "PC01", "CORP\\bob")

    def test_wrong_root(self):
        with open(self.path, "w") as f:
            f.write("<ScheduledTasks/>")
        with self.assertRaises(gppadmin.GPPError):
            gppadmin.addLocalAdmin(self.path, "PC01", "CORP\\bob")

    def test_main(self):
        self.assertEqual(gppadmin.main([self.path, "PC03", "CORP\\alice", "--sid", "S-1-5-21-1-2-3-1500"]), 0)
        (group,) = self._groups()
        self.assertEqual(group.find("Properties/Members/Member").get("sid"), "S-1-5-21-1-2-3-1500")


if __name__ == "__main__":
    unittest.main()
