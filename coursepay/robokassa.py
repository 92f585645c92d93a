from __future__ import annotations
import hashlib
import hmac
from enum import Enum
from typing import Dict, Mapping, Optional

SHP_PREFIX = "shp_"


class SignatureAlgorithm(str, Enum):
    MD5 = "md5"
    SHA256 = "sha256"

    @classmethod
    def from_name(cls, name: str) -> "SignatureAlgorithm":
        try:
            return cls((name or "").strip().lower())
        except ValueError:
            raise ValueError(
                f"unsupported signature algorithm {name!r}"
            ) from None

    def hexdigest(self, s: str) -> str:
        data = s.encode("utf-8", errors="surrogatepass")
        if self is SignatureAlgorithm.SHA256:
            return hashlib.sha256(data).hexdigest()
        return hashlib.md5(data).hexdigest()


def _shp_parts(shp: Optional[Mapping[str, object]]) -> list[str]:
    # sorted so the digest does not depend on insertion order
    items = sorted((shp or {}).items())
    return [f"{k}={'' if v is None else v}" for k, v in items]


def _sign(head: list[str], shp, password: str,
          algorithm: SignatureAlgorithm, shp_after_password: bool) -> str:
    if shp_after_password:
        parts = head + [password] + _shp_parts(shp)
    else:
        parts = head + _shp_parts(shp) + [password]
    return algorithm.hexdigest(":".join(parts))


def sign_initiate(
    login: str,
    out_sum: str,
    inv_id: int,
    receipt: Optional[str],
    shp: Optional[Mapping[str, object]],
    password: str,
    algorithm: SignatureAlgorithm = SignatureAlgorithm.MD5,
    shp_after_password: bool = False,
) -> str:
    """
    login:OutSum:InvId[:Receipt]:Shp_a=..:Shp_b=..:Password#1

    Receipt is the URL-encoded JSON, exactly as submitted to the gateway.
    """
    head = [str(login), str(out_sum), str(inv_id)]
    if receipt:
        head.append(str(receipt))
    return _sign(head, shp, password, algorithm, shp_after_password)


def sign_result(
    out_sum: str,
    inv_id: int | str,
    shp: Optional[Mapping[str, object]],
    password: str,
    algorithm: SignatureAlgorithm = SignatureAlgorithm.MD5,
    shp_after_password: bool = False,
) -> str:
    """OutSum:InvId:Shp_a=..:Password#2"""
    head = [str(out_sum), str(inv_id)]
    return _sign(head, shp, password, algorithm, shp_after_password)


def verify(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected or not provided:
        return False
    a = expected.strip().lower().encode("utf-8", errors="replace")
    b = provided.strip().lower().encode("utf-8", errors="replace")
    return hmac.compare_digest(a, b)


def extract_shp(params: Mapping[str, object]) -> Dict[str, str]:
    return {
        k: ("" if v is None else str(v))
        for k, v in params.items()
        if isinstance(k, str) and k.lower().startswith(SHP_PREFIX)
    }


def shp_value(shp: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive lookup of a custom field: shp_value(shp, "email")."""
    wanted = SHP_PREFIX + name.lower()
    for k, v in shp.items():
        if k.lower() == wanted:
            return v
    return None


# ----------------------------
# Gateway adapter bound to one merchant configuration
# ----------------------------
class RobokassaSigner:
    def __init__(self, *, login: str, initiate_password: str,
                 result_password: str,
                 algorithm: SignatureAlgorithm = SignatureAlgorithm.MD5,
                 shp_after_password: bool = False) -> None:
        self.login = login
        self.initiate_password = initiate_password
        self.result_password = result_password
        self.algorithm = algorithm
        self.shp_after_password = shp_after_password

    @classmethod
    def from_settings(cls, settings) -> "RobokassaSigner":
        return cls(
            login=settings.merchant_login,
            initiate_password=settings.initiate_password,
            result_password=settings.result_password,
            algorithm=settings.signature_alg,
            shp_after_password=settings.shp_after_password,
        )

    def sign_checkout(self, out_sum: str, inv_id: int,
                      receipt: Optional[str],
                      shp: Mapping[str, object]) -> str:
        return sign_initiate(self.login, out_sum, inv_id, receipt, shp,
                             self.initiate_password, self.algorithm,
                             self.shp_after_password)

    def expected_result(self, out_sum: str, inv_id: int | str,
                        shp: Mapping[str, object]) -> str:
        return sign_result(out_sum, inv_id, shp, self.result_password,
                           self.algorithm, self.shp_after_password)

    def verify_result(self, out_sum: str, inv_id: int | str,
                      shp: Mapping[str, object], provided: str) -> bool:
        return verify(self.expected_result(out_sum, inv_id, shp), provided)
