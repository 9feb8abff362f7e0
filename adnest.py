# AD nested group membership application
# Author: Konrads Klints <konrads.klints@kpmg.co.uk>
import sys
import logging
import argparse
import glob
import io
import os
import shutil

import datasource
import ldapaccess
import membership

format_types = "table csv graph-dot".split(" ")


def _find_graphviz_dot():
    dotfile = shutil.which("dot")
    if dotfile:
        return dotfile
    candidates = glob.glob(os.path.join(os.environ.get('PROGRAMFILES', ''), "GraphViz*", "bin", "dot.exe"))
    if len(candidates):
        dotfile = candidates[0]
        if os.path.exists(dotfile):
            return dotfile
    return None


def makeParser():
    parser = argparse.ArgumentParser(description="Expand nested AD group membership.\nIf no credentials are supplied an anonymous bind will be used",
                                     epilog=\
"""
Supported output formats are:
 * table - indented membership tree with loop and duplicate markers
 * csv - raw visit records, one per line
 * graph-dot - a graph as understood by GraphViz. Files ending in .dot are written as is,
   other extensions are rendered with dot.
""".strip(), formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument('objects', metavar='OBJECT', type=str, nargs='+',
                        help='User, group or computer to expand. You can specify both DN and account names, '
                             '- reads names from standard input')
    parser.add_argument('--debug', dest='debug', action='store_true', default=False,
                        help='Enable debugging output')
    parser.add_argument('-o', '--output', dest='output', type=str, metavar="FILE",
                        help='Output file, defaults to stdout')
    parser.add_argument("-d", "--direction",
                        help="""Lookup direction. Forward looks up the members of the group,
                        backward - groups that the specified object is a member of""",
                        type=lambda x: x.lower(), choices=membership.DIRECTIONS,
                        default=membership.FORWARD, dest='direction')
    parser.add_argument('-f', '--format', dest='format_type', type=lambda x: x.lower(), choices=format_types,
                        default=format_types[0],
                        help="Output format")
    parser.add_argument('--raw', dest='format_type', action='store_const', const="csv",
                        help="Output raw visit records, same as --format csv")
    parser.add_argument('--max-depth', dest='max_depth', type=int, default=membership.DEFAULT_MAX_DEPTH,
                        help="Give up when the tree is deeper than this, 0 disables the limit (default %(default)s)")
    graphgroup = parser.add_argument_group("graphing", "Options related to graph generation")
    dotfile = _find_graphviz_dot()
    graphgroup.add_argument('--graphviz-dot', dest='dotfile', type=str, default=dotfile,
                            help="Path to GraphViz dot, best guess: %s" % (dotfile or "NOT FOUND"))
    datasource.addConnectionArguments(parser)
    return parser


def _readObjects(names, stdin):
    objects = []
    for name in names:
        if name == "-":
            objects.extend([l.strip() for l in stdin if l.strip()])
        else:
            objects.append(name)
    return objects


def describeError(e):
    msg = str(e)
    if e.__cause__ is not None and not isinstance(e, membership.MembershipError):
        msg = "%s (caused by %s: %s)" % (msg, type(e.__cause__).__name__, e.__cause__)
    return msg


def writeGraph(records, args):
    graph = membership.buildGraph(records, args.direction)
    ext = args.output.split(".")[-1].lower()
    if ext == "dot":
        graph.write_raw(args.output)
        return
    if not args.dotfile or not os.path.exists(args.dotfile):
        raise datasource.DataSourceException("dot does not exist, I got path %s" % args.dotfile)
    logging.debug("Rendering %s with %s" % (args.output, args.dotfile))
    graph.write(args.output, prog=args.dotfile, format=ext)


def run(args, output):
    maxDepth = args.max_depth if args.max_depth > 0 else None
    objects = _readObjects(args.objects, sys.stdin)
    if not objects:
        raise membership.IdentityNotFound("No objects to expand")
    source = datasource.openDataSource(args)
    records = membership.getNestedMembershipForAll(source, objects, args.direction, maxDepth)
    logging.debug("Expanded %i objects into %i records" % (len(objects), len(records)))

    if args.format_type == "table":
        roots = []
        for r in records:
            if r.depth == 0:
                roots.append([])
            roots[-1].append(r)
        output.write("\n\n".join(membership.formatTable(t) for t in roots) + "\n")
    elif args.format_type == "csv":
        membership.writeCsv(records, output)
    elif args.format_type == "graph-dot":
        writeGraph(records, args)
    return records


def main(argv=None):
    parser = makeParser()
    args = parser.parse_args(argv)
    if args.format_type == "graph-dot" and args.output is None:
        print("ERROR: If you specify graph-dot, you must specify output!\n", file=sys.stderr)
        parser.print_help()
        return 2

    if args.format_type == "csv" and args.output:
        ext = args.output.split(".")[-1]
        if not ext.lower().endswith("csv"):
            logging.warning("You requested CSV output, but specified output file with a different extension: %s" % ext)
    level = logging.INFO
    if args.debug:
        level = logging.DEBUG
    logging.basicConfig(level=level, stream=sys.stderr)
    sys.setrecursionlimit(max(sys.getrecursionlimit(), 3000))

    try:
        if args.output and args.format_type != "graph-dot":
            # the file is only touched once the whole walk has succeeded
            buffer = io.StringIO()
            run(args, buffer)
            with open(args.output, "w", newline="", encoding="utf-8") as output:
                output.write(buffer.getvalue())
        else:
            run(args, sys.stdout)
    except (membership.MembershipError, ldapaccess.LDAPAccessException,
            datasource.DataSourceException, OSError, ValueError) as e:
        logging.error(describeError(e))
        logging.debug("Failure details", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
