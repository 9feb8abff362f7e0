# Nested AD group membership expansion
# Author: Konrads Klints <konrads.klints@kpmg.co.uk>
import collections
import csv
import logging

import pydot

logger = logging.getLogger("Membership")

FORWARD = "forward"
BACKWARD = "backward"
DIRECTIONS = (FORWARD, BACKWARD)

KIND_USER = "user"
KIND_GROUP = "group"
KIND_COMPUTER = "computer"
KINDS = (KIND_USER, KIND_GROUP, KIND_COMPUTER)

STATUS_NONE = "none"
STATUS_LOOPING = "looping"
STATUS_DUPLICATE = "duplicate"

PATH_SEPARATOR = "\\"
DEFAULT_MAX_DEPTH = 64
INDENT = "  "

DirectoryObject = collections.namedtuple(
    "DirectoryObject", "kind distinguishedName accountName displayName")

VisitRecord = collections.namedtuple(
    "VisitRecord",
    "index depth name status statusIndex path rootAccountName distinguishedName")


class MembershipError(Exception):
    def __init__(self, *args, **kwargs):
        self.operation = kwargs.get('operation', None)
        super(MembershipError, self).__init__(*args)

    def __str__(self):
        msg = super(MembershipError, self).__str__()
        if self.operation:
            msg = "%s: %s" % (self.operation, msg)
        if self.__cause__ is not None:
            msg = "%s (caused by %s: %s)" % (msg, type(self.__cause__).__name__, self.__cause__)
        return msg


class IdentityNotFound(MembershipError):
    pass


class DirectoryQueryFailed(MembershipError):
    pass


class MalformedResponse(MembershipError):
    pass


class DepthLimitExceeded(MembershipError):
    pass


def _checkObject(obj):
    if obj is None:
        raise MalformedResponse("Directory returned an empty object")
    if not obj.distinguishedName:
        raise MalformedResponse("Object %r has no distinguished name" % (obj.displayName,))
    if obj.kind not in KINDS:
        raise IdentityNotFound("Object %s is a %s, expected one of %s" %
                               (obj.distinguishedName, obj.kind, ", ".join(KINDS)))
    if not obj.accountName:
        raise MalformedResponse("Object %s has no account name" % obj.distinguishedName)
    return obj


def _sortKey(obj):
    return ((obj.displayName or "").lower(), obj.distinguishedName.lower())


def _status(key, ancestors, history):
    # looking only for the first instance
    if key in ancestors:
        return STATUS_LOOPING, history.index(key)
    if key in history:
        return STATUS_DUPLICATE, history.index(key)
    return STATUS_NONE, None


def _walk(directory, node, direction, depth, ancestors, history, path, rootAccountName, maxDepth, records):
    """
    One pre-order step. ``history`` is shared by every branch of the
    traversal, ``ancestors`` is a fresh tuple for each call.
    """
    key = node.distinguishedName.lower()
    index = len(history)
    status, statusIndex = _status(key, ancestors, history)
    history.append(key)
    path = path + (node.accountName,)
    records.append(VisitRecord(index, depth, node.displayName or node.accountName,
                               status, statusIndex, PATH_SEPARATOR.join(path),
                               rootAccountName, node.distinguishedName))
    if status != STATUS_NONE:
        logger.debug("%s is %s on index %i, not expanding" % (node.distinguishedName, status, statusIndex))
        return

    related = [_checkObject(o) for o in directory.related(node, direction)]
    logger.debug("Resolved %i %s relations of %s at depth %i" %
                 (len(related), direction, node.distinguishedName, depth))
    if not related:
        return
    if maxDepth is not None and depth >= maxDepth:
        raise DepthLimitExceeded("Maximum depth %i reached at %s" % (maxDepth, PATH_SEPARATOR.join(path)))

    ancestors = ancestors + (key,)
    for child in sorted(related, key=_sortKey):
        _walk(directory, child, direction, depth + 1, ancestors, history, path,
              rootAccountName, maxDepth, records)


def _resolveRoot(directory, root):
    if isinstance(root, DirectoryObject):
        return _checkObject(root)
    obj = directory.resolve(root)
    if obj is None:
        raise IdentityNotFound("No user, group or computer named `%s` has been found" % root)
    return _checkObject(obj)


def getNestedMembership(directory, root, direction=FORWARD, maxDepth=DEFAULT_MAX_DEPTH):
    """
    Expand the membership tree of ``root`` depth first.

    ``directory`` must provide ``resolve(identity)`` and
    ``related(obj, direction)``. ``root`` is either a DirectoryObject or an
    identity understood by ``resolve``. Returns the list of VisitRecords in
    visitation order; any failure aborts the whole call.
    """
    if direction not in DIRECTIONS:
        raise ValueError("Unknown direction %s" % direction)
    records = []
    try:
        rootObject = _resolveRoot(directory, root)
        logger.debug("Expanding %s (%s)" % (rootObject.distinguishedName, direction))
        _walk(directory, rootObject, direction, 0, (), [], (), rootObject.accountName, maxDepth, records)
    except MembershipError as e:
        if e.operation is None:
            e.operation = "getNestedMembership"
        raise
    except Exception as e:
        raise DirectoryQueryFailed("Directory query failed while expanding %s" % (root,),
                                   operation="getNestedMembership") from e
    return records


def getNestedMembershipForAll(directory, roots, direction=FORWARD, maxDepth=DEFAULT_MAX_DEPTH):
    records = []
    for root in roots:
        records.extend(getNestedMembership(directory, root, direction, maxDepth))
    return records


def formatStatus(record):
    if record.status == STATUS_LOOPING:
        return "Looping -> %i" % record.statusIndex
    if record.status == STATUS_DUPLICATE:
        return "Duplicate -> %i" % record.statusIndex
    return ""


TABLE_COLUMNS = ("Index", "MembershipTree", "Status", "MembershipPath")


def formatTable(records):
    rows = [(str(r.index), INDENT * r.depth + r.name, formatStatus(r), r.path) for r in records]
    widths = [len(c) for c in TABLE_COLUMNS]
    for row in rows:
        widths = [max(w, len(c)) for w, c in zip(widths, row)]

    def _line(cells):
        return " ".join(c.ljust(w) for c, w in zip(cells, widths)).rstrip()

    lines = [_line(TABLE_COLUMNS), _line(["-" * w for w in widths])]
    lines.extend(_line(row) for row in rows)
    return "\n".join(l for l in lines if l.strip())


CSV_FIELDS = ("rootAccountName", "index", "depth", "name", "status", "statusIndex",
              "path", "distinguishedName")


def writeCsv(records, output):
    writer = csv.DictWriter(output, fieldnames=CSV_FIELDS, quoting=csv.QUOTE_MINIMAL,
                            lineterminator="\n")
    writer.writeheader()
    for r in records:
        row = r._asdict()
        if row['statusIndex'] is None:
            row['statusIndex'] = ""
        writer.writerow(row)


LEGEND = """
<<TABLE BORDER="0" CELLBORDER="1" CELLSPACING="0" CELLPADDING="4">
     <tr><td colspan="2">Legend</td></tr>
     <tr><td colspan="2">Direction: %s</td></tr>
<TR>
      <TD> Regular object </TD>
      <TD BGCOLOR="#bfefff"> &nbsp;&nbsp;&nbsp;&nbsp;<br/></TD>
</TR>
     <TR>
      <TD>Reached more than once</TD>
      <TD BGCOLOR="#ff69b4"> &nbsp;&nbsp;&nbsp;&nbsp;</TD>
     </TR>
     <TR>
      <TD>Membership loop</TD>
      <TD BGCOLOR="#ff6a6a"> &nbsp;&nbsp;&nbsp;&nbsp;</TD>
     </TR>
    </TABLE>>""".strip()

_EDGE_COLORS = {STATUS_LOOPING: "indianred1", STATUS_DUPLICATE: "hotpink"}


def buildGraph(records, direction=FORWARD):
    graph = pydot.Dot(graph_type='digraph', fontname="Verdana", rankdir='LR')
    nodes = {}
    parents = []
    for r in records:
        # depth d record hangs off the last record seen at depth d-1
        del parents[r.depth:]
        key = r.distinguishedName.lower()
        if key not in nodes:
            nodes[key] = pydot.Node("node_%i" % len(nodes), shape="rect", color="lightblue2",
                                    style="filled", label=r.name)
            graph.add_node(nodes[key])
        node = nodes[key]
        if parents:
            edge = pydot.Edge(parents[-1].get_name(), node.get_name())
            if r.status in _EDGE_COLORS:
                edge.set_color(_EDGE_COLORS[r.status])
                edge.set_style("bold")
                node.set_color(_EDGE_COLORS[r.status])
            graph.add_edge(edge)
        parents.append(node)
    graph.add_node(pydot.Node("legend", shape="none", margin="0", label=LEGEND % direction.upper()))
    return graph
