from __future__ import annotations
from typing import NamedTuple
from enum import IntEnum

# https://lapo.it/asn1js/#MEICAQFgPQIBAwQqY249TWFuYWdlcixkYz1jc2M5NSxkYz1zZS12aS1zY2llbmNlLGRjPXJ1gAxyMDB0UGFTc3cwckQ
# https://raw.githubusercontent.com/pyasn1/pyasn1-modules/02f9c577bcd0ad9fedfb0fd5dc598d323f7984bf/pyasn1_modules/rfc2251.py
# https://www.rfc-editor.org/rfc/rfc4511#appendix-B

from pyasn1.type import univ, tag, namedtype, namedval, constraint
from pyasn1.codec.ber import decoder, encoder
from pyasn1.error import PyAsn1Error
from .exceptions import ResultCode, InternalError
from .filters import SearchFilter

maxInt = univ.Integer(2147483647)

WHOAMI_OID = "1.3.6.1.4.1.4203.1.11.3"
NOTICE_OF_DISCONNECTION_OID = "1.3.6.1.4.1.1466.20036"


def _context(number: int, constructed: bool = False) -> tag.Tag:
    return tag.Tag(
        tag.tagClassContext,
        tag.tagFormatConstructed if constructed else tag.tagFormatSimple,
        number,
    )


def _application(number: int, constructed: bool = True) -> tag.Tag:
    return tag.Tag(
        tag.tagClassApplication,
        tag.tagFormatConstructed if constructed else tag.tagFormatSimple,
        number,
    )


def _text(value: univ.OctetString) -> str:
    return value.asOctets().decode()


# --- Minimal ASN.1 types (very reduced) ---
class MessageID(univ.Integer):
    pass


class LDAPString(univ.OctetString):
    pass


class LDAPOID(univ.OctetString):
    pass


class AttributeValue(univ.OctetString):
    pass


class AttributeDescription(LDAPString):
    pass


class LDAPDN(LDAPString):
    pass


class Attribute(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("type", AttributeDescription()),
        namedtype.NamedType(
            "vals", univ.SetOf(componentType=AttributeValue())
        ),
    )


class PartialAttributeList(univ.SequenceOf):
    componentType = Attribute()


class SaslCredentials(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("mechanism", LDAPString()),
        namedtype.OptionalNamedType("credentials", univ.OctetString()),
    )


class AuthenticationChoice(univ.Choice):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType(
            "simple", univ.OctetString().subtype(implicitTag=_context(0))
        ),
        namedtype.NamedType(
            "sasl",
            SaslCredentials().subtype(
                implicitTag=_context(3, constructed=True)
            ),
        ),
    )


class LDAPResultCode(univ.Enumerated):
    namedValues = namedval.NamedValues(
        *((code.name, int(code)) for code in ResultCode)
    )


class Referral(univ.SequenceOf):
    componentType = LDAPString()


class LDAPResult(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("resultCode", LDAPResultCode()),
        namedtype.NamedType("matchedDN", LDAPDN()),
        namedtype.NamedType("diagnosticMessage", LDAPString()),
        namedtype.OptionalNamedType(
            "referral",
            Referral().subtype(implicitTag=_context(3, constructed=True)),
        ),
    )


class BindRequest(univ.Sequence):
    tagSet = univ.Sequence.tagSet.tagImplicitly(_application(0))
    componentType = namedtype.NamedTypes(
        namedtype.NamedType(
            "version",
            univ.Integer().subtype(
                subtypeSpec=constraint.ValueRangeConstraint(1, 127)
            ),
        ),
        namedtype.NamedType("name", LDAPDN()),
        namedtype.NamedType("authentication", AuthenticationChoice()),
    )


class BindResponse(LDAPResult):
    tagSet = univ.Sequence.tagSet.tagImplicitly(_application(1))


class UnbindRequest(univ.Null):
    tagSet = univ.Null.tagSet.tagImplicitly(_application(2, False))


class AttributeValueAssertion(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("attributeDesc", AttributeDescription()),
        namedtype.NamedType("assertionValue", univ.OctetString()),
    )


class SubstringFilter(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("type", AttributeDescription()),
        namedtype.NamedType(
            "substrings",
            univ.SequenceOf(
                componentType=univ.Choice(
                    componentType=namedtype.NamedTypes(
                        namedtype.NamedType(
                            "initial",
                            LDAPString().subtype(implicitTag=_context(0)),
                        ),
                        namedtype.NamedType(
                            "any",
                            LDAPString().subtype(implicitTag=_context(1)),
                        ),
                        namedtype.NamedType(
                            "final",
                            LDAPString().subtype(implicitTag=_context(2)),
                        ),
                    )
                )
            ),
        ),
    )


class MatchingRuleAssertion(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.OptionalNamedType(
            "matchingRule", LDAPString().subtype(implicitTag=_context(1))
        ),
        namedtype.OptionalNamedType(
            "type", AttributeDescription().subtype(implicitTag=_context(2))
        ),
        namedtype.NamedType(
            "matchValue", univ.OctetString().subtype(implicitTag=_context(3))
        ),
        namedtype.DefaultedNamedType(
            "dnAttributes",
            univ.Boolean()
            .subtype(implicitTag=_context(4))
            .subtype(value=0),
        ),
    )


# Filter is recursive, pyasn1 types are not. Operands of `and`, `or` and
# `not` stay raw BER and `build()` decodes them one level at a time.

_COMPARISONS = {
    "equalityMatch": "=",
    "greaterOrEqual": ">=",
    "lessOrEqual": "<=",
    "approxMatch": "~=",
}


class NotFilter(univ.Sequence):
    tagSet = univ.Sequence.tagSet.tagImplicitly(_context(2, constructed=True))
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("filter", univ.Any())
    )


class Filter(univ.Choice):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType(
            "and",
            univ.SetOf(componentType=univ.Any()).subtype(
                implicitTag=_context(0, constructed=True)
            ),
        ),
        namedtype.NamedType(
            "or",
            univ.SetOf(componentType=univ.Any()).subtype(
                implicitTag=_context(1, constructed=True)
            ),
        ),
        namedtype.NamedType("not", NotFilter()),
        namedtype.NamedType(
            "equalityMatch",
            AttributeValueAssertion().subtype(implicitTag=_context(3, True)),
        ),
        namedtype.NamedType(
            "substrings",
            SubstringFilter().subtype(implicitTag=_context(4, True)),
        ),
        namedtype.NamedType(
            "greaterOrEqual",
            AttributeValueAssertion().subtype(implicitTag=_context(5, True)),
        ),
        namedtype.NamedType(
            "lessOrEqual",
            AttributeValueAssertion().subtype(implicitTag=_context(6, True)),
        ),
        namedtype.NamedType(
            "present", AttributeDescription().subtype(implicitTag=_context(7))
        ),
        namedtype.NamedType(
            "approxMatch",
            AttributeValueAssertion().subtype(implicitTag=_context(8, True)),
        ),
        namedtype.NamedType(
            "extensibleMatch",
            MatchingRuleAssertion().subtype(implicitTag=_context(9, True)),
        ),
    )

    def build(self) -> SearchFilter:
        op = self.getName()
        value = self[op]
        if op in ("and", "or"):
            operands = [decode_filter(item.asOctets()) for item in value]
            return {"op": op, "operands": operands}
        if op == "not":
            operand = decode_filter(value["filter"].asOctets())
            return {"op": op, "operand": operand}
        if op in _COMPARISONS:
            return {
                "op": _COMPARISONS[op],
                "lhs": _text(value["attributeDesc"]),
                "rhs": _text(value["assertionValue"]),
            }
        if op == "present":
            return {"op": "has", "attr": _text(value)}
        if op == "substrings":
            return {"op": op, "attr": _text(value["type"])}
        return {"op": op}


def decode_filter(octets: bytes) -> SearchFilter:
    """Decode one BER encoded Filter, nested operands included"""
    search_filter, rest = decoder.decode(octets, asn1Spec=Filter())
    if rest:
        raise PyAsn1Error(f"{len(rest)} trailing bytes after filter")
    return search_filter.build()


class Scope(IntEnum):
    baseObject = 0
    singleLevel = 1
    wholeSubtree = 2


class SearchRequest(univ.Sequence):
    tagSet = univ.Sequence.tagSet.tagImplicitly(_application(3))
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("baseObject", LDAPDN()),
        namedtype.NamedType(
            "scope",
            univ.Enumerated(
                namedValues=namedval.NamedValues(
                    *((scope.name, int(scope)) for scope in Scope)
                )
            ),
        ),
        namedtype.NamedType(
            "derefAliases",
            univ.Enumerated(
                namedValues=namedval.NamedValues(
                    ("neverDerefAliases", 0),
                    ("derefInSearching", 1),
                    ("derefFindingBaseObj", 2),
                    ("derefAlways", 3),
                )
            ),
        ),
        namedtype.NamedType(
            "sizeLimit",
            univ.Integer().subtype(
                subtypeSpec=constraint.ValueRangeConstraint(0, maxInt)
            ),
        ),
        namedtype.NamedType(
            "timeLimit",
            univ.Integer().subtype(
                subtypeSpec=constraint.ValueRangeConstraint(0, maxInt)
            ),
        ),
        namedtype.NamedType("typesOnly", univ.Boolean()),
        namedtype.NamedType("filter", Filter()),
        namedtype.NamedType("attributes", univ.SequenceOf(LDAPString())),
    )


class SearchResultEntry(univ.Sequence):
    tagSet = univ.Sequence.tagSet.tagImplicitly(_application(4))
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("objectName", LDAPDN()),
        namedtype.NamedType("attributes", PartialAttributeList()),
    )


class SearchResultDone(LDAPResult):
    tagSet = univ.Sequence.tagSet.tagImplicitly(_application(5))


class ExtendedRequest(univ.Sequence):
    tagSet = univ.Sequence.tagSet.tagImplicitly(_application(23))
    componentType = namedtype.NamedTypes(
        namedtype.NamedType(
            "requestName", LDAPOID().subtype(implicitTag=_context(0))
        ),
        namedtype.OptionalNamedType(
            "requestValue",
            univ.OctetString().subtype(implicitTag=_context(1)),
        ),
    )


class ExtendedResponse(univ.Sequence):
    tagSet = univ.Sequence.tagSet.tagImplicitly(_application(24))
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("resultCode", LDAPResultCode()),
        namedtype.NamedType("matchedDN", LDAPDN()),
        namedtype.NamedType("diagnosticMessage", LDAPString()),
        namedtype.OptionalNamedType(
            "referral",
            Referral().subtype(implicitTag=_context(3, constructed=True)),
        ),
        namedtype.OptionalNamedType(
            "responseName", LDAPOID().subtype(implicitTag=_context(10))
        ),
        namedtype.OptionalNamedType(
            "responseValue",
            univ.OctetString().subtype(implicitTag=_context(11)),
        ),
    )


class LDAPMessage(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("messageID", MessageID()),
        namedtype.NamedType(
            "protocolOp",
            univ.Choice(
                componentType=namedtype.NamedTypes(
                    namedtype.NamedType("bindRequest", BindRequest()),
                    namedtype.NamedType("bindResponse", BindResponse()),
                    namedtype.NamedType("unbindRequest", UnbindRequest()),
                    namedtype.NamedType("searchRequest", SearchRequest()),
                    namedtype.NamedType("searchResEntry", SearchResultEntry()),
                    namedtype.NamedType("searchResDone", SearchResultDone()),
                    namedtype.NamedType("extendedReq", ExtendedRequest()),
                    namedtype.NamedType("extendedResp", ExtendedResponse()),
                )
            ),
        ),
        namedtype.OptionalNamedType("controls", univ.Any()),
    )


def frame_length(buf: bytes) -> int | None:
    """Size of the LDAPMessage at the start of `buf`

    None while the BER header itself is incomplete.
    """
    if buf[0] != 0x30:
        raise InternalError(f"Not an LDAPMessage, tag {buf[0]:#04x}")
    if len(buf) < 2:
        return None
    length = buf[1]
    if length < 0x80:
        return 2 + length
    # long form, indefinite length (0x80) is not allowed in LDAP
    count = length & 0x7F
    if not 0 < count <= 4:
        raise InternalError(f"Unsupported length octet {length:#04x}")
    if len(buf) < 2 + count:
        return None
    return 2 + count + int.from_bytes(buf[2 : 2 + count], "big")


# --- Decoded requests ---
class BindOp(NamedTuple):
    msgid: int
    dn: str
    password: bytes


class SearchOp(NamedTuple):
    msgid: int
    base: str
    scope: Scope
    search_filter: SearchFilter
    attributes: list[str]


class WhoamiOp(NamedTuple):
    msgid: int


class UnbindOp(NamedTuple):
    msgid: int


Operation = BindOp | SearchOp | WhoamiOp | UnbindOp


def decode_operation(lm: LDAPMessage) -> Operation:
    msgid = int(lm["messageID"])
    op = lm["protocolOp"]
    name = op.getName()
    request = op.getComponent()
    try:
        if name == "bindRequest":
            authentication = request["authentication"]
            if authentication.getName() != "simple":
                raise InternalError(
                    f"Unsupported authentication {authentication.getName()}"
                )
            return BindOp(
                msgid=msgid,
                dn=_text(request["name"]),
                password=authentication["simple"].asOctets(),
            )
        if name == "searchRequest":
            return SearchOp(
                msgid=msgid,
                base=_text(request["baseObject"]),
                scope=Scope(int(request["scope"])),
                search_filter=request["filter"].build(),
                attributes=[_text(attr) for attr in request["attributes"]],
            )
        if name == "extendedReq":
            oid = _text(request["requestName"])
            if oid == WHOAMI_OID:
                return WhoamiOp(msgid=msgid)
            raise InternalError(f"Unsupported extended operation {oid}")
        if name == "unbindRequest":
            return UnbindOp(msgid=msgid)
    except (ValueError, RecursionError, PyAsn1Error) as e:
        raise InternalError(f"Malformed {name}: {e}") from e
    raise InternalError(f"Unsupported operation {name}")


# --- Responses ---
class BindResult(NamedTuple):
    msgid: int
    result_code: ResultCode
    diagnostic: str = ""


class SearchEntry(NamedTuple):
    msgid: int
    dn: str
    attributes: dict[str, list[str]]


class SearchDone(NamedTuple):
    msgid: int
    result_code: ResultCode
    diagnostic: str = ""


class ExtendedResult(NamedTuple):
    msgid: int
    result_code: ResultCode
    diagnostic: str = ""
    name: str | None = None
    value: str | None = None


Response = BindResult | SearchEntry | SearchDone | ExtendedResult


def _encode_message(msgid: int, name: str, protocol_op: univ.Sequence):
    lm = LDAPMessage()
    lm.setComponentByName("messageID", msgid)
    lm["protocolOp"].setComponentByName(name, protocol_op)
    return encoder.encode(lm)


def _fill_result(
    result: univ.Sequence, result_code: ResultCode, diagnostic: str
) -> None:
    result["resultCode"] = int(result_code)
    result["matchedDN"] = b""
    result["diagnosticMessage"] = diagnostic.encode()


def encode_bind_response(
    msgid: int, result_code: ResultCode, diagnostic: str = ""
) -> bytes:
    br = BindResponse()
    _fill_result(br, result_code, diagnostic)
    return _encode_message(msgid, "bindResponse", br)


def encode_search_result_entry(
    msgid: int, dn: str, attributes: dict[str, list[str]]
) -> bytes:
    """Encode a SearchResultEntry response"""

    sre = SearchResultEntry()
    sre["objectName"] = dn.encode()

    attrs_seq = PartialAttributeList()
    for attr_type, values in attributes.items():
        attr = Attribute()
        attr["type"] = attr_type.encode()
        vals_set = univ.SetOf(componentType=AttributeValue())
        for value in values:
            vals_set.append(value.encode())
        attr["vals"] = vals_set
        attrs_seq.append(attr)
    sre["attributes"] = attrs_seq

    return _encode_message(msgid, "searchResEntry", sre)


def encode_search_result_done(
    msgid: int, result_code: ResultCode, diagnostic: str = ""
) -> bytes:
    """Encode a SearchResultDone response"""

    srd = SearchResultDone()
    _fill_result(srd, result_code, diagnostic)
    return _encode_message(msgid, "searchResDone", srd)


def encode_extended_response(
    msgid: int,
    result_code: ResultCode,
    diagnostic: str = "",
    name: str | None = None,
    value: str | None = None,
) -> bytes:
    er = ExtendedResponse()
    _fill_result(er, result_code, diagnostic)
    if name is not None:
        er["responseName"] = name.encode()
    if value is not None:
        er["responseValue"] = value.encode()
    return _encode_message(msgid, "extendedResp", er)


def encode_response(response: Response) -> bytes:
    try:
        match response:
            case BindResult(msgid, result_code, diagnostic):
                return encode_bind_response(msgid, result_code, diagnostic)
            case SearchEntry(msgid, dn, attributes):
                return encode_search_result_entry(msgid, dn, attributes)
            case SearchDone(msgid, result_code, diagnostic):
                return encode_search_result_done(
                    msgid, result_code, diagnostic
                )
            case ExtendedResult(msgid, result_code, diagnostic, name, value):
                return encode_extended_response(
                    msgid, result_code, diagnostic, name, value
                )
    except (AttributeError, TypeError, ValueError, PyAsn1Error) as e:
        # e.g. a NULL column in the users table
        raise InternalError(
            f"Unable to encode {type(response).__name__}: {e}"
        ) from e
    raise TypeError(f"Unknown response {response!r}")


def disconnection_notice(diagnostic: str = "Internal Server Error") -> bytes:
    """Unsolicited notification, always sent with message id 0"""
    return encode_extended_response(
        0, ResultCode.other, diagnostic, name=NOTICE_OF_DISCONNECTION_OID
    )
