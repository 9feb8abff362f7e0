# Grant local administrator rights on one machine through Group Policy Preferences
# Author: Konrads Klints <konrads.klints@kpmg.co.uk>
import sys
import os
import logging
import argparse
import datetime
import uuid
import xml.etree.ElementTree as ET

import datasource
import ldapaccess

logger = logging.getLogger("GPPAdmin")

GROUPS_CLSID = "{3125E937-EB16-4b4c-9934-544FC6D24D26}"
GROUP_CLSID = "{6D4A79E4-529C-4481-ABD0-F5BD7EA93BA7}"
ADMINISTRATORS_SID = "S-1-5-32-544"
ADMINISTRATORS_NAME = "Administrators (built-in)"


class GPPError(Exception):
    pass


def _now():
    return datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def loadGroups(path):
    if not os.path.exists(path):
        logger.debug("%s does not exist, starting a new one" % path)
        return ET.ElementTree(ET.Element("Groups", clsid=GROUPS_CLSID))
    try:
        tree = ET.parse(path)
    except ET.ParseError as e:
        raise GPPError("Can't parse %s: %s" % (path, e)) from e
    if tree.getroot().tag != "Groups":
        raise GPPError("%s is not a Group Policy Preferences groups file, root is <%s>" % (path, tree.getroot().tag))
    return tree


def _targetsComputer(group, computerName):
    filters = group.findall("Filters/FilterComputer")
    return any(f.get("name", "").lower() == computerName.lower() and f.get("not", "0") == "0"
               for f in filters)


def findAdminGroup(root, computerName):
    for group in root.findall("Group"):
        props = group.find("Properties")
        if props is None or props.get("groupSid") != ADMINISTRATORS_SID:
            continue
        if _targetsComputer(group, computerName):
            return group
    return None


def newAdminGroup(root, computerName):
    group = ET.SubElement(root, "Group", {
        "clsid": GROUP_CLSID,
        "name": ADMINISTRATORS_NAME,
        "image": "2",
        "changed": _now(),
        "uid": "{%s}" % str(uuid.uuid4()).upper(),
    })
    props = ET.SubElement(group, "Properties", {
        "action": "U",
        "newName": "",
        "description": "Local administrators of %s" % computerName,
        "deleteAllUsers": "0",
        "deleteAllGroups": "0",
        "removeAccounts": "0",
        "groupSid": ADMINISTRATORS_SID,
        "groupName": ADMINISTRATORS_NAME,
    })
    ET.SubElement(props, "Members")
    filters = ET.SubElement(group, "Filters")
    ET.SubElement(filters, "FilterComputer", {
        "bool": "AND",
        "not": "0",
        "type": "NETBIOS",
        "name": computerName,
    })
    logger.debug("Created administrators item for %s" % computerName)
    return group


def addLocalAdmin(path, computerName, memberName, memberSid=""):
    tree = loadGroups(path)
    root = tree.getroot()
    group = findAdminGroup(root, computerName)
    if group is None:
        group = newAdminGroup(root, computerName)
    props = group.find("Properties")
    members = props.find("Members")
    if members is None:
        members = ET.SubElement(props, "Members")

    for m in members.findall("Member"):
        if m.get("name", "").lower() == memberName.lower() and m.get("action") == "ADD":
            logger.info("%s is already a local administrator of %s" % (memberName, computerName))
            return False

    ET.SubElement(members, "Member", {"name": memberName, "action": "ADD", "sid": memberSid or ""})
    group.set("changed", _now())
    ET.indent(tree)
    tree.write(path, encoding="utf-8", xml_declaration=True)
    logger.info("Added %s to local administrators of %s in %s" % (memberName, computerName, path))
    return True


def main(argv=None):
    parser = argparse.ArgumentParser(description="Add a local administrator grant for one machine to a GPP Groups.xml")
    parser.add_argument('groupsFile', metavar='GROUPS_XML', type=str,
                        help='Path to Groups.xml, like \\\\domain\\SYSVOL\\domain\\Policies\\{GUID}\\Machine\\Preferences\\Groups\\Groups.xml')
    parser.add_argument('computer', metavar='COMPUTER', type=str, help='NetBIOS name of the machine')
    parser.add_argument('member', metavar='MEMBER', type=str, help='Account to grant, like DOMAIN\\user')
    parser.add_argument('--debug', dest='debug', action='store_true', default=False,
                        help='Enable debugging output')
    sidgroup = parser.add_mutually_exclusive_group()
    sidgroup.add_argument('--sid', dest='sid', type=str, default="", help='SID of the member')
    sidgroup.add_argument('--resolve-sid', dest='resolve_sid', action='store_true', default=False,
                          help='Look the member SID up in the directory')
    datasource.addConnectionArguments(parser)
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO, stream=sys.stderr)

    try:
        sid = args.sid
        if args.resolve_sid:
            account = args.member.split("\\")[-1]
            sid = datasource.openDataSource(args).getObjectSid(account)
            logger.debug("SID of %s is %s" % (args.member, sid))
        addLocalAdmin(args.groupsFile, args.computer, args.member, sid)
    except (GPPError, ldapaccess.LDAPAccessException, datasource.DataSourceException, OSError) as e:
        logging.error("Can't update %s: %s" % (args.groupsFile, e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
