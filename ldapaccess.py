# LDAP data source for Active Directory
# Author: Konrads Klints <konrads.klints@kpmg.co.uk>
import ldap
import ldap.sasl
import ldap.filter
import re
import logging
from ldap.controls import SimplePagedResultsControl
from impacket.ldap.ldaptypes import LDAP_SID

import membership

logger = logging.getLogger("LDAPAccess")
LDAP_PAGE_SIZE = 250
BINARY_ATTRIBUTES = ("objectSid", "objectGUID")
DEFAULT_ATTRS = "distinguishedName,name,displayName,sAMAccountName,objectClass".split(",")
ACCOUNT_CLASSES = ["user", "group"]


class LDAPAccessException(Exception):
    SIZE_EXCEEDED = 1
    INVALID_CREDENTIALS = 2

    def __init__(self, *args, **kwargs):
        self.code = kwargs.get('code', None)
        super(LDAPAccessException, self).__init__(*args)


def escape(attr):
    return ldap.filter.escape_filter_chars(attr, 0)


def sidToString(raw):
    if raw is None or len(raw) < 8:
        raise ValueError("Binary SID is too short")
    if len(raw) < 8 + 4 * raw[1]:
        raise ValueError("Binary SID declares %i sub-authorities but is %i bytes long" % (raw[1], len(raw)))
    return LDAP_SID(raw).formatCanonical()


def aslist(value):
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        return [value]
    return list(value)


def _decode(name, values):
    if name in BINARY_ATTRIBUTES:
        return values
    return [v.decode("utf-8", "replace") if isinstance(v, bytes) else v for v in values]


def _kindOf(objectClasses):
    classes = [c.lower() for c in aslist(objectClasses)]
    # computer objects are users too
    for kind in (membership.KIND_COMPUTER, membership.KIND_GROUP, membership.KIND_USER):
        if kind in classes:
            return kind
    if classes:
        return classes[-1]
    return None


def toDirectoryObject(entry):
    dn = entry.get('distinguishedName') or entry.get('_DN')
    if not dn:
        raise membership.MalformedResponse("Directory entry without a distinguished name: %r" % (entry,))
    account = entry.get('sAMAccountName')
    name = entry.get('displayName') or entry.get('name') or entry.get('cn') or account
    return membership.DirectoryObject(_kindOf(entry.get('objectClass')), dn, account, name)


class LDAPAccess(object):
    def __init__(self, uri, username=None, password=None):
        self.uri = uri
        self.username = username
        self.password = password
        self.conn = None
        m = re.search("^(LDAP|LDAPS)://([^/]+)/?(.*)$", uri, re.IGNORECASE)
        if not m:
            raise ValueError("Invalid LDAP URI '%s'" % self.uri)
        (proto, host, base) = m.groups()
        self.base = base
        self.host = host
        self.proto = proto.upper()

    def _serverUri(self):
        return "%s://%s" % (self.proto.lower(), self.host)

    def _getConnection(self):
        if self.conn is None:
            conn = ldap.initialize(self._serverUri())
            conn.set_option(ldap.OPT_REFERRALS, 0)
            conn.set_option(ldap.OPT_PROTOCOL_VERSION, 3)
            try:
                if self.username:
                    try:
                        conn.simple_bind_s(self.username, self.password)
                        logger.debug("Connected to %s as %s" % (self.uri, self.username))
                    except ldap.STRONG_AUTH_REQUIRED:
                        auth_tok = ldap.sasl.digest_md5(self.username, self.password)
                        conn.sasl_interactive_bind_s("", auth_tok)
                        logger.debug("Connected to %s as %s via SASL-MD5" % (self.uri, self.username))
                else:
                    logger.debug("Connected to %s anonymously" % self.uri)
            except ldap.INVALID_CREDENTIALS as e:
                raise LDAPAccessException("Invalid credentials for %s" % self.username,
                                          code=LDAPAccessException.INVALID_CREDENTIALS) from e
            except ldap.LDAPError as e:
                raise LDAPAccessException("Can't connect to %s: %s" % (self.uri, _ldapErrorText(e))) from e
            self.conn = conn
        return self.conn

    def getDefaultNamingContext(self):
        conn = self._getConnection()
        try:
            res = conn.search_s("", ldap.SCOPE_BASE, "(objectClass=*)", ["defaultNamingContext"])
        except ldap.LDAPError as e:
            raise LDAPAccessException("Can't read rootDSE of %s: %s" % (self.uri, _ldapErrorText(e))) from e
        for (dn, attribs) in res:
            values = attribs.get("defaultNamingContext")
            if values:
                return _decode("defaultNamingContext", values)[0]
        raise LDAPAccessException("rootDSE of %s has no defaultNamingContext" % self.uri)

    def getBase(self):
        if not self.base:
            self.base = self.getDefaultNamingContext()
            logger.debug("Using default naming context %s" % self.base)
        return self.base

    def search(self, searchFilter, attributes=None, scope=ldap.SCOPE_SUBTREE, base=None, sizelimit=0):
        if base is None:
            base = self.getBase()
        l = self._getConnection()
        logger.debug("Search filter: `%s`, attributes: %s" % (searchFilter, str(attributes)))
        lc = SimplePagedResultsControl(True, size=LDAP_PAGE_SIZE, cookie='')
        results = []
        known_ldap_resp_ctrls = {
            SimplePagedResultsControl.controlType: SimplePagedResultsControl,
        }
        try:
            msgid = l.search_ext(base, scope, searchFilter, attributes, sizelimit=sizelimit, serverctrls=[lc])
            pages = 0
            while True:
                pages += 1
                logger.debug("Getting page %i" % pages)
                rtype, rdata, rmsgid, serverctrls = l.result3(msgid, resp_ctrl_classes=known_ldap_resp_ctrls)
                logger.debug("Retrieved %i records" % len(rdata))

                for (dn, attribs) in rdata:
                    # referrals come back as lists
                    if dn is None or isinstance(attribs, list):
                        continue
                    result = {'_DN': dn}
                    for (k, v) in attribs.items():
                        v = _decode(k, v)
                        result[k] = v[0] if len(v) == 1 else v
                    results.append(result)
                pctrls = [
                    c
                    for c in serverctrls
                    if c.controlType == SimplePagedResultsControl.controlType
                ]
                if pctrls:
                    if pctrls[0].cookie:
                        lc.cookie = pctrls[0].cookie
                        msgid = l.search_ext(base, scope, searchFilter, attributes, sizelimit=sizelimit,
                                             serverctrls=[lc])
                    else:
                        break
                else:
                    logger.warning("Warning:  Server ignores RFC 2696 control.")
                    break
        except ldap.SIZELIMIT_EXCEEDED as e:
            raise LDAPAccessException("The size limit for this request was exceeded: %s" % searchFilter,
                                      code=LDAPAccessException.SIZE_EXCEEDED) from e
        except ldap.LDAPError as e:
            raise LDAPAccessException("Search `%s` failed: %s" % (searchFilter, _ldapErrorText(e))) from e
        return results

    def findGroups(self, groupName, attributes=None):
        searchFilter = "(&(objectClass=group)(|(distinguishedName=%s)(name=%s)))" % (escape(groupName), escape(groupName))
        return self.search(searchFilter, attributes)

    def findUserOrGroup(self, objname, attributes=None):
        names = ["(distinguishedName=%s)" % escape(objname), "(sAMAccountName=%s)" % escape(objname)]
        if not objname.endswith("$") and "=" not in objname:
            names.append("(sAMAccountName=%s$)" % escape(objname))
        searchFilter = "(&(|(objectClass=group)(objectClass=user)(objectClass=computer))(|%s))" % "".join(names)
        return self.search(searchFilter, attributes)

    def _getPrimaryGroupID(self, groupName):
        searchFilter = "(&(objectClass=group)(distinguishedName=%s))" % escape(groupName)
        res = self.search(searchFilter, ["objectSid"])
        if not res or 'objectSid' not in res[0]:
            logger.debug("Couldn't find objectSid of %s" % groupName)
            return None
        objectSid = sidToString(res[0]['objectSid'])
        primaryGroupID = objectSid.split("-")[-1]
        logger.debug("objectSid: %s, RID: %s" % (objectSid, primaryGroupID))
        return primaryGroupID

    def findGroupMembers(self, groupName, objectClasses=None, attributes=None):
        # just same basic sanity check:
        if not re.search(r"\w+=[^,]+,", groupName):
            raise ValueError("The group name must be in DN format. You supplied: %s" % groupName)
        # a group set as someone's primaryGroupID does not list them in member
        primaryGroupID = self._getPrimaryGroupID(groupName)
        clauses = "(memberOf=%s)" % escape(groupName)
        if primaryGroupID is not None:
            clauses = "(|(primaryGroupID=%s)%s)" % (primaryGroupID, clauses)
        if objectClasses:
            searchFilter = "(&%s(|%s))" % (clauses, "".join(["(objectClass=%s)" % x for x in objectClasses]))
        else:
            searchFilter = clauses
        return self.search(searchFilter, attributes)

    def findMemberOf(self, dn, attributes=None):
        results = self.search("(&(objectClass=group)(member=%s))" % escape(dn), attributes)
        own = self.search("(distinguishedName=%s)" % escape(dn), ["objectSid", "primaryGroupID"])
        if own and own[0].get('objectSid') and own[0].get('primaryGroupID'):
            domainSid = sidToString(own[0]['objectSid']).rsplit("-", 1)[0]
            primary = "%s-%s" % (domainSid, own[0]['primaryGroupID'])
            logger.debug("Primary group of %s is %s" % (dn, primary))
            known = set(r['_DN'].lower() for r in results)
            for r in self.search("(&(objectClass=group)(objectSid=%s))" % primary, attributes):
                if r['_DN'].lower() not in known:
                    results.append(r)
        return results

    def findGPLinks(self, attributes=None):
        if attributes is None:
            attributes = ["distinguishedName", "name", "gPLink", "gPOptions", "objectClass"]
        return self.search("(gPLink=*)", attributes)

    def findGPOs(self, attributes=None):
        if attributes is None:
            attributes = ["cn", "displayName", "gPCFileSysPath"]
        return self.search("(objectClass=groupPolicyContainer)", attributes)

    def getObjectSid(self, objname):
        res = self.findUserOrGroup(objname, ["distinguishedName", "objectSid"])
        if len(res) != 1:
            raise LDAPAccessException("%i objects found named `%s`" % (len(res), objname))
        if not res[0].get('objectSid'):
            raise LDAPAccessException("Object `%s` has no objectSid" % objname)
        return sidToString(res[0]['objectSid'])

    # Directory query interface used by membership.getNestedMembership

    def resolve(self, identity):
        entries = self.findUserOrGroup(identity, DEFAULT_ATTRS)
        if len(entries) == 0:
            logger.info("No objects named `%s` have been found" % identity)
            return None
        if len(entries) > 1:
            raise membership.IdentityNotFound(
                "%i objects found named `%s`: %s" %
                (len(entries), identity, ", ".join([e['_DN'] for e in entries])))
        return toDirectoryObject(entries[0])

    def related(self, obj, direction):
        if direction == membership.FORWARD:
            if obj.kind != membership.KIND_GROUP:
                return []
            entries = self.findGroupMembers(obj.distinguishedName, ACCOUNT_CLASSES, DEFAULT_ATTRS)
        elif direction == membership.BACKWARD:
            entries = self.findMemberOf(obj.distinguishedName, DEFAULT_ATTRS)
        else:
            raise ValueError("Unknown direction %s" % direction)
        return [toDirectoryObject(e) for e in entries]

    def checkCredentials(self):
        if not self.username or not self.password:
            # AD treats a simple bind without password as anonymous
            logger.warning("Empty username or password, refusing to test")
            return False
        conn = ldap.initialize(self._serverUri())
        conn.set_option(ldap.OPT_REFERRALS, 0)
        conn.set_option(ldap.OPT_PROTOCOL_VERSION, 3)
        try:
            conn.simple_bind_s(self.username, self.password)
            logger.debug("Bound to %s as %s" % (self.uri, self.username))
            return True
        except ldap.INVALID_CREDENTIALS:
            logger.debug("Invalid credentials for %s" % self.username)
            return False
        except ldap.LDAPError as e:
            raise LDAPAccessException("Can't connect to %s: %s" % (self.uri, _ldapErrorText(e))) from e
        finally:
            try:
                conn.unbind_s()
            except ldap.LDAPError as e:
                logger.debug("Unbind from %s failed: %s" % (self.uri, _ldapErrorText(e)))

    def close(self):
        if self.conn is not None:
            self.conn.unbind_s()
            self.conn = None


def _ldapErrorText(e):
    if e.args and isinstance(e.args[0], dict):
        info = e.args[0]
        return " ".join(filter(None, [info.get('desc'), info.get('info')]))
    return str(e)
