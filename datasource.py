# Locating domain controllers and opening LDAP data sources
# Author: Konrads Klints <konrads.klints@kpmg.co.uk>
import base64
import codecs
import logging
import os

import dns.exception
import dns.resolver

import ldapaccess

logger = logging.getLogger("DataSource")


class DataSourceException(Exception):
    pass


def get_dcs_for_domain(domain):
    fqdn = "_ldap._tcp.dc._msdcs.%s" % domain
    logger.debug("Trying to query " + fqdn)
    try:
        answers = dns.resolver.resolve(fqdn, 'SRV')
    except dns.exception.DNSException as e:
        raise DataSourceException("Couldn't get a DC for domain %s: %s" % (domain, e)) from e
    # lowest priority first, heaviest weight first within a priority
    answers = sorted(answers, key=lambda ans: (ans.priority, -ans.weight))
    return [str(ans.target).rstrip('.') for ans in answers]


def dnstoldap(dns):
    segments = dns.strip(".").split(".")
    return ",".join(["DC=" + x for x in segments])


def getLdapSourceFromDomain(domain, username, password, ssl=False):
    servers = get_dcs_for_domain(domain)
    if len(servers) == 0:
        raise DataSourceException("Couldn't get a DC for domain " + domain)
    proto = "LDAPS" if ssl else "LDAP"
    errors = []
    for server in servers:
        ldapsource = "%s://%s/%s" % (proto, server, dnstoldap(domain))
        logger.debug("The constructed LDAP source is: '%s'" % ldapsource)
        acc = ldapaccess.LDAPAccess(ldapsource, username, password)
        try:
            acc._getConnection()
            return acc
        except ldapaccess.LDAPAccessException as e:
            if e.code == ldapaccess.LDAPAccessException.INVALID_CREDENTIALS:
                raise
            logger.debug("Can't connect to %s: %s" % (server, str(e)))
            errors.append("%s: %s" % (server, e))
    raise DataSourceException("No domain controller of %s accepted the connection (%s)" %
                              (domain, "; ".join(errors)))


def readCredfile(path):
    with open(path, 'rb') as f:
        encoded = f.read().strip()
    decoded = codecs.decode(base64.b64decode(encoded).decode("utf-8"), 'rot13')
    return splitCredentials(decoded)


def splitCredentials(credentials):
    if ":" not in credentials:
        raise DataSourceException("Credentials must be separated by a colon like DOMAIN\\user:password")
    (username, password) = credentials.split(":", 1)
    return username, password


def getCredentials(args):
    if args.credentials:
        return splitCredentials(args.credentials)
    elif args.credfile:
        return readCredfile(args.credfile)
    return None, None


def addConnectionArguments(parser):
    parser.add_argument("-s", "--data-source",
                        help="Specify data source: LDAP://host/base, LDAPS://host/base or DNS "
                             "to find a domain controller through SRV records. Defaults to DNS",
                        type=str, default="DNS", dest='source')
    parser.add_argument("--domain", dest="domain", type=str,
                        default=os.environ.get("USERDNSDOMAIN"),
                        help="Domain (DNS style) to use with the DNS data source, defaults to %%USERDNSDOMAIN%%")
    parser.add_argument("--ssl", dest="ssl", action="store_true", default=False,
                        help="Use LDAPS when locating domain controllers through DNS")
    group = parser.add_argument_group("creds", "credential management").add_mutually_exclusive_group(required=False)
    group.add_argument('--credentials', dest='credentials', type=str,
                       help='Credentials separated by column like DOMAIN\\user:password')
    group.add_argument('--credfile', dest='credfile', type=str,
                       help='Credential file which contains one line with rot13 + base64 encoded credentials like DOMAIN\\user:password')
    return parser


def getSourceUri(args):
    if args.source.upper().startswith("LDAP"):
        return args.source
    if args.source.upper() != "DNS":
        raise DataSourceException("Unknown data source " + args.source)
    if not args.domain:
        raise DataSourceException("The DNS data source needs --domain")
    servers = get_dcs_for_domain(args.domain)
    if not servers:
        raise DataSourceException("Couldn't get a DC for domain " + args.domain)
    return "%s://%s/%s" % ("LDAPS" if args.ssl else "LDAP", servers[0], dnstoldap(args.domain))


def openDataSource(args):
    (username, password) = getCredentials(args)
    if args.source.upper().startswith("LDAP"):
        return ldapaccess.LDAPAccess(args.source, username, password)
    if args.source.upper() != "DNS":
        raise DataSourceException("Unknown data source " + args.source)
    if not args.domain:
        raise DataSourceException("The DNS data source needs --domain")
    return getLdapSourceFromDomain(args.domain, username, password, args.ssl)
