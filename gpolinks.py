# List where Group Policy Objects are linked
# Author: Konrads Klints <konrads.klints@kpmg.co.uk>
import sys
import logging
import argparse
import collections
import csv
import re

import datasource
import ldapaccess

logger = logging.getLogger("GPOLinks")

GPLink = collections.namedtuple("GPLink", "guid gpoDN enabled enforced order")

# [LDAP://cn={GUID},cn=policies,cn=system,DC=...;Options]
_gplink_re = re.compile(r"\[LDAP://([^;\]]*?cn=(\{[0-9a-fA-F-]+\})[^;\]]*);(\d+)\]", re.IGNORECASE)

LINK_DISABLED = 1
LINK_ENFORCED = 2
BLOCK_INHERITANCE = 1

FIELDS = ("target", "targetName", "order", "gpoGuid", "gpoName", "enabled", "enforced", "blockInheritance")


def parseGPLink(value):
    """Links in precedence order, the leftmost link in gPLink wins."""
    links = []
    if not value:
        return links
    for (i, m) in enumerate(_gplink_re.finditer(value)):
        options = int(m.group(3))
        links.append(GPLink(m.group(2).upper(), m.group(1), not bool(options & LINK_DISABLED),
                            bool(options & LINK_ENFORCED), i + 1))
    return links


def getGPOLinks(source, gpoName=None):
    gpos = {}
    for gpo in source.findGPOs():
        cn = gpo.get('cn')
        if cn:
            gpos[cn.upper()] = gpo.get('displayName') or cn
    logger.debug("Found %i GPOs" % len(gpos))

    rows = []
    for target in source.findGPLinks():
        dn = target.get('distinguishedName') or target['_DN']
        gPLinks = ldapaccess.aslist(target.get('gPLink'))
        blocked = str(target.get('gPOptions', "0")) == str(BLOCK_INHERITANCE)
        for value in gPLinks:
            for link in parseGPLink(value):
                name = gpos.get(link.guid, link.guid)
                if gpoName and gpoName.lower() not in (name.lower(), link.guid.lower()):
                    continue
                rows.append({
                    'target': dn,
                    'targetName': target.get('name', dn),
                    'order': link.order,
                    'gpoGuid': link.guid,
                    'gpoName': name,
                    'enabled': link.enabled,
                    'enforced': link.enforced,
                    'blockInheritance': blocked,
                })
    rows.sort(key=lambda r: (r['target'].lower(), r['order']))
    return rows


def formatTable(rows):
    table = [FIELDS] + [tuple(str(r[f]) for f in FIELDS) for r in rows]
    widths = [max(len(row[i]) for row in table) for i in range(len(FIELDS))]
    return "\n".join(" ".join(c.ljust(w) for c, w in zip(row, widths)).rstrip() for row in table)


def main(argv=None):
    format_types = "table csv".split(" ")
    parser = argparse.ArgumentParser(description="List the containers Group Policy Objects are linked to")
    parser.add_argument('--gpo', dest='gpo', type=str, metavar="NAME",
                        help='Only show links of this GPO (display name or {GUID})')
    parser.add_argument('-f', '--format', dest='format_type', type=lambda x: x.lower(), choices=format_types,
                        default=format_types[0], help="Output format")
    parser.add_argument('-o', '--output', dest='output', type=str, metavar="FILE",
                        help='Output file, defaults to stdout')
    parser.add_argument('--debug', dest='debug', action='store_true', default=False,
                        help='Enable debugging output')
    datasource.addConnectionArguments(parser)
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO, stream=sys.stderr)

    try:
        rows = getGPOLinks(datasource.openDataSource(args), args.gpo)
    except (ldapaccess.LDAPAccessException, datasource.DataSourceException, ValueError) as e:
        logging.error("Can't list GPO links: %s" % e)
        return 1

    output = sys.stdout
    if args.output:
        try:
            output = open(args.output, "w", newline="", encoding="utf-8")
        except OSError as e:
            logging.error("Can't write %s: %s" % (args.output, e))
            return 1
    try:
        if args.format_type == "csv":
            writer = csv.DictWriter(output, fieldnames=FIELDS, lineterminator="\n")
            writer.writeheader()
            writer.writerows(rows)
        else:
            output.write(formatTable(rows) + "\n")
    finally:
        if output is not sys.stdout:
            output.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
