# Check a set of credentials against the domain
# Author: Konrads Klints <konrads.klints@kpmg.co.uk>
import sys
import logging
import argparse
import getpass

import datasource
import ldapaccess


def testCredential(uri, username, password):
    return ldapaccess.LDAPAccess(uri, username, password).checkCredentials()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Validate a username and password by binding to a domain controller")
    parser.add_argument('username', metavar='USERNAME', type=str,
                        help='Account to test, like DOMAIN\\user or user@domain')
    parser.add_argument('-p', '--password', dest='password', type=str,
                        help='Password to test, prompted for when omitted')
    parser.add_argument('--debug', dest='debug', action='store_true', default=False,
                        help='Enable debugging output')
    datasource.addConnectionArguments(parser)
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO, stream=sys.stderr)

    password = args.password
    if password is None:
        password = getpass.getpass("Password for %s: " % args.username)
    try:
        uri = datasource.getSourceUri(args)
        valid = testCredential(uri, args.username, password)
    except (ldapaccess.LDAPAccessException, datasource.DataSourceException, ValueError) as e:
        logging.error("Can't check credentials of %s: %s" % (args.username, e))
        return 2
    print("VALID" if valid else "INVALID")
    return 0 if valid else 1


if __name__ == "__main__":
    sys.exit(main())
