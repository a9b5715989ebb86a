"""
Dual-Field Feldman Verifiable Secret Sharing (VSS)

For Version 0.1.0
Licensed under the MIT License

A dealer splits a secret into n shares over GF(q) so that any t of them
reconstruct it, and publishes discrete-log commitments over Z_p^* so that
every player can check its share without learning anything about the
secret. Parameters (p, q, g) satisfy q | (p - 1) and g has order q mod p.

Arithmetic in the two fields is kept apart: share-space arithmetic always
goes through ``Parameters.scalar_field`` (mod q) and commitment-space
arithmetic through ``Parameters.group_field`` (mod p).
"""

import dataclasses
import hashlib
import importlib.util
import itertools
import logging
import secrets
import threading
import time
import warnings
from base64 import urlsafe_b64decode, urlsafe_b64encode
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Literal,
    NamedTuple,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
)

import msgpack
import xxhash

# Conditional import based on availability
if importlib.util.find_spec("blake3"):
    import blake3

    has_blake3 = True
else:
    blake3 = None  # type: ignore
    has_blake3 = False

try:
    import gmpy2
    from gmpy2 import mpz
except ImportError as exc:
    raise ImportError(
        "gmpy2 library is required for this module. "
        "Install gmpy2 with: pip install gmpy2"
    ) from exc


__all__ = [
    "VSSConfig",
    "Parameters",
    "ParameterGenerator",
    "PrimeField",
    "Polynomial",
    "CommitmentScheme",
    "FeldmanCommitment",
    "CommitmentSet",
    "Share",
    "Dealer",
    "Player",
    "SharingSession",
    "SessionState",
    "VerificationFailure",
    "share",
    "verify_share",
    "reconstruct_secret",
    "lagrange_coefficient",
    "is_probable_prime",
    "secure_random",
    "create_secure_deterministic_rng",
    "compute_checksum",
    "serialize_commitments",
    "deserialize_commitments",
    "VSSError",
    "GenerationError",
    "InvalidInputError",
    "InsufficientSharesError",
    "DuplicateIndexError",
    "NotInvertibleError",
    "SerializationError",
    "SecurityError",
    "ProtocolViolationError",
    "SessionStateError",
    "SecurityWarning",
    "FieldElement",
    "Randomizer",
]
__version__ = "0.1.0"

VSS_VERSION = "DFVSS-v0.1.0"
DEFAULT_CERTAINTY = 80
MIN_Q_BITS = 256
MIN_P_BITS = 2048

logger = logging.getLogger(__name__)

_MPZ_TYPE = type(mpz(0))

FieldElement = Union[int, "gmpy2.mpz"]
# A randomizer returns a uniform integer in [0, bound)
Randomizer = Callable[[int], int]
VerificationResult = Tuple[bool, Dict[int, bool]]


# --- Exceptions ---


class SecurityWarning(Warning):
    """Warning for potentially insecure configurations or operations."""


class VSSError(Exception):
    """Base class for every error raised by this module."""

    default_severity = "error"

    def __init__(
        self,
        message: str,
        detailed_info: Optional[str] = None,
        severity: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detailed_info = detailed_info
        self.severity = severity or self.default_severity
        self.timestamp = int(time.time()) if timestamp is None else timestamp

    def _forensic_fields(self) -> Dict[str, Any]:
        return {}

    def get_forensic_data(self, detail_level: Literal["low", "medium", "high"] = "medium") -> Dict[str, Any]:
        """Return the error context as a dictionary for diagnosis."""
        if detail_level not in ("low", "medium", "high"):
            raise ValueError(f"Unknown detail level: {detail_level!r}")
        data: Dict[str, Any] = {
            "message": self.message,
            "severity": self.severity,
            "timestamp": self.timestamp,
            "error_type": type(self).__name__,
        }
        if detail_level in ("medium", "high"):
            data.update(self._forensic_fields())
        if detail_level == "high":
            data["detailed_info"] = self.detailed_info
        return data


class GenerationError(VSSError):
    """Bounded search for primes or a generator was exhausted."""

    def __init__(self, message: str, attempts: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.attempts = attempts

    def _forensic_fields(self) -> Dict[str, Any]:
        return {"attempts": self.attempts}


class InvalidInputError(VSSError):
    """Caller supplied an out-of-range threshold, secret, index or parameter."""

    def __init__(
        self,
        message: str,
        parameter_name: Optional[str] = None,
        parameter_value: Optional[Any] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.parameter_name = parameter_name
        self.parameter_value = parameter_value

    def _forensic_fields(self) -> Dict[str, Any]:
        return {"parameter_name": self.parameter_name, "parameter_value": self.parameter_value}


class InsufficientSharesError(VSSError):
    """Reconstruction was attempted with fewer shares than the threshold."""

    def __init__(self, message: str, required: int, provided: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.required = required
        self.provided = provided

    def _forensic_fields(self) -> Dict[str, Any]:
        return {"required": self.required, "provided": self.provided}


class DuplicateIndexError(VSSError):
    """Two shares handed to reconstruction carry the same index."""

    def __init__(self, message: str, index: FieldElement, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.index = index

    def _forensic_fields(self) -> Dict[str, Any]:
        return {"index": int(self.index)}


class NotInvertibleError(VSSError):
    """A modular inverse does not exist. Under honest inputs this is a defect."""

    default_severity = "critical"

    def __init__(self, modulus: FieldElement, value: FieldElement, message: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message or f"{value} is not invertible modulo {modulus}", **kwargs)
        self.modulus = modulus
        self.value = value

    def _forensic_fields(self) -> Dict[str, Any]:
        return {"modulus": int(self.modulus), "value": int(self.value)}


class SerializationError(VSSError):
    """Exception raised for serialization or deserialization errors."""

    def __init__(
        self,
        message: str,
        data_format: Optional[str] = None,
        checksum_info: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.data_format = data_format
        self.checksum_info = checksum_info

    def _forensic_fields(self) -> Dict[str, Any]:
        return {"data_format": self.data_format, "checksum_info": self.checksum_info}


class SecurityError(VSSError):
    """Integrity failure or a fault detected in the dealer's own output."""

    default_severity = "critical"


class ProtocolViolationError(VSSError):
    """Participants disagree on the public parameters of a sharing."""

    default_severity = "critical"


class SessionStateError(VSSError):
    """Operation is not allowed in the current state of a sharing session."""

    def __init__(self, message: str, current_state: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.current_state = current_state

    def _forensic_fields(self) -> Dict[str, Any]:
        return {"current_state": self.current_state}


# --- Configuration ---


@dataclass
class VSSConfig:
    q_bits: int = MIN_Q_BITS
    cofactor_bits: int = MIN_P_BITS - MIN_Q_BITS
    certainty: int = DEFAULT_CERTAINTY
    max_attempts: int = 100_000
    workers: int = 1
    self_check: bool = True
    use_blake3: bool = True

    def __post_init__(self) -> None:
        for name in ("q_bits", "cofactor_bits", "certainty", "max_attempts", "workers"):
            value = getattr(self, name)
            if not _is_integer(value) or value < 1:
                raise InvalidInputError(f"{name} must be a positive integer", parameter_name=name, parameter_value=value)
        if self.q_bits < 3:
            raise InvalidInputError("q_bits must be at least 3", parameter_name="q_bits", parameter_value=self.q_bits)
        if self.cofactor_bits < 2:
            raise InvalidInputError(
                "cofactor_bits must be at least 2", parameter_name="cofactor_bits", parameter_value=self.cofactor_bits
            )

        if self.q_bits < MIN_Q_BITS:
            warnings.warn(
                f"Using q of {self.q_bits} bits, which is less than the recommended {MIN_Q_BITS} bits",
                SecurityWarning,
                stacklevel=2,
            )
        if self.q_bits + self.cofactor_bits < MIN_P_BITS:
            warnings.warn(
                f"Using p of about {self.q_bits + self.cofactor_bits} bits, "
                f"which is less than the recommended {MIN_P_BITS} bits",
                SecurityWarning,
                stacklevel=2,
            )
        if self.use_blake3 and not has_blake3:
            warnings.warn("BLAKE3 requested but not installed. Using SHA3-256 instead.", RuntimeWarning, stacklevel=2)


# --- Helpers ---


def _is_integer(value: Any) -> bool:
    return isinstance(value, (int, _MPZ_TYPE)) and not isinstance(value, bool)


def _hash_digest(data: bytes, use_blake3: bool = True) -> bytes:
    if use_blake3 and has_blake3:
        return blake3.blake3(data).digest()
    return hashlib.sha3_256(data).digest()


def _check_bound(bound: Any) -> int:
    if not _is_integer(bound):
        raise TypeError("bound must be an integer")
    if bound <= 0:
        raise ValueError("bound must be positive")
    return int(bound)


def compute_checksum(data: bytes) -> int:
    """Compute a 64-bit xxh3 checksum of data."""
    if not isinstance(data, (bytes, bytearray)):
        raise TypeError("data must be bytes")
    return xxhash.xxh3_64_intdigest(bytes(data))


def secure_random(bound: int) -> int:
    """Uniform integer in [0, bound) from the operating system CSPRNG."""
    return secrets.randbelow(_check_bound(bound))


def create_secure_deterministic_rng(seed: bytes, use_blake3: bool = True) -> Randomizer:
    """
    Build a reproducible randomizer from a seed.

    The stream is hash(seed || counter) for an increasing 64-bit counter;
    values are drawn by rejection sampling so they are uniform in [0, bound).
    Meant for tests and reproducible demos, never for production sharing.
    """
    if not isinstance(seed, bytes):
        raise TypeError("seed must be bytes")
    if not seed:
        raise ValueError("seed cannot be empty")
    if len(seed) < 32:
        raise ValueError("seed must be at least 32 bytes")

    counter = itertools.count()
    lock = threading.Lock()

    def _next_bits(nbits: int) -> int:
        nbytes = (nbits + 7) // 8
        stream = bytearray()
        while len(stream) < nbytes:
            stream += _hash_digest(seed + next(counter).to_bytes(8, "big"), use_blake3)
        return int.from_bytes(stream[:nbytes], "big") >> (nbytes * 8 - nbits)

    def randomizer(bound: int) -> int:
        bound = _check_bound(bound)
        if bound == 1:
            return 0
        nbits = (bound - 1).bit_length()
        with lock:
            while True:
                candidate = _next_bits(nbits)
                if candidate < bound:
                    return candidate

    return randomizer


def is_probable_prime(n: FieldElement, certainty: int = DEFAULT_CERTAINTY) -> bool:
    """
    Probabilistic primality test.

    certainty is the usual error exponent: a composite passes with
    probability at most 2^-certainty, i.e. ceil(certainty / 2) Miller-Rabin
    rounds.
    """
    if not _is_integer(n) or n < 2:
        return False
    rounds = max(1, (certainty + 1) // 2)
    return bool(gmpy2.is_prime(mpz(n), rounds))


# --- Field arithmetic ---


class PrimeField:
    """
    Arithmetic modulo a fixed modulus, with every result in [0, modulus).

    The modulus is not primality-tested here; Parameters validation covers
    that for the two fields the protocol uses.
    """

    __slots__ = ("modulus",)

    def __init__(self, modulus: FieldElement) -> None:
        if not _is_integer(modulus) or modulus < 2:
            raise InvalidInputError(
                "Field modulus must be an integer >= 2", parameter_name="modulus", parameter_value=modulus
            )
        self.modulus = mpz(modulus)

    @classmethod
    def coerce(cls, value: Union["PrimeField", FieldElement]) -> "PrimeField":
        if isinstance(value, PrimeField):
            return value
        return cls(value)

    def normalize(self, a: FieldElement) -> "gmpy2.mpz":
        return mpz(a) % self.modulus

    def add(self, a: FieldElement, b: FieldElement) -> "gmpy2.mpz":
        return (mpz(a) + mpz(b)) % self.modulus

    def sub(self, a: FieldElement, b: FieldElement) -> "gmpy2.mpz":
        return (mpz(a) - mpz(b)) % self.modulus

    def neg(self, a: FieldElement) -> "gmpy2.mpz":
        return (-mpz(a)) % self.modulus

    def mul(self, a: FieldElement, b: FieldElement) -> "gmpy2.mpz":
        return (mpz(a) * mpz(b)) % self.modulus

    def pow(self, base: FieldElement, exponent: FieldElement) -> "gmpy2.mpz":
        """Square-and-multiply exponentiation; a negative exponent inverts the base."""
        exponent = mpz(exponent)
        if exponent < 0:
            base = self.inverse(base)
            exponent = -exponent
        return mpz(gmpy2.powmod(self.normalize(base), exponent, self.modulus))

    def inverse(self, value: FieldElement) -> "gmpy2.mpz":
        """Modular inverse by the extended Euclidean algorithm."""
        reduced = self.normalize(value)
        gcd, s, _ = gmpy2.gcdext(reduced, self.modulus)
        if gcd != 1:
            raise NotInvertibleError(
                modulus=self.modulus,
                value=value,
                detailed_info=f"gcd({reduced}, {self.modulus}) = {gcd}",
            )
        return mpz(s) % self.modulus

    def div(self, a: FieldElement, b: FieldElement) -> "gmpy2.mpz":
        return self.mul(a, self.inverse(b))

    def random_element(self, rng: Optional[Randomizer] = None, zero_ok: bool = True) -> "gmpy2.mpz":
        rng = rng or secure_random
        if zero_ok:
            return mpz(rng(int(self.modulus)))
        return mpz(rng(int(self.modulus) - 1) + 1)

    def __contains__(self, value: Any) -> bool:
        return _is_integer(value) and 0 <= value < self.modulus

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PrimeField):
            return NotImplemented
        return self.modulus == other.modulus

    def __hash__(self) -> int:
        return hash(("PrimeField", int(self.modulus)))

    def __repr__(self) -> str:
        return f"PrimeField(modulus_bits={self.modulus.bit_length()})"


# --- Parameters ---


@dataclass(frozen=True)
class Parameters:
    """Public group parameters shared read-only by every participant."""

    p: "gmpy2.mpz"
    q: "gmpy2.mpz"
    g: "gmpy2.mpz"

    def __post_init__(self) -> None:
        for name in ("p", "q", "g"):
            value = getattr(self, name)
            if not _is_integer(value):
                raise InvalidInputError(f"{name} must be an integer", parameter_name=name, parameter_value=value)
            object.__setattr__(self, name, mpz(value))

    @classmethod
    def from_values(
        cls, p: FieldElement, q: FieldElement, g: FieldElement, certainty: int = DEFAULT_CERTAINTY
    ) -> "Parameters":
        return cls(p, q, g).validate(certainty)  # type: ignore[arg-type]

    def validate(self, certainty: int = DEFAULT_CERTAINTY) -> "Parameters":
        """Check every group invariant, raising InvalidInputError on the first violation."""
        if not is_probable_prime(self.q, certainty):
            raise InvalidInputError("q failed primality test", parameter_name="q", parameter_value=self.q)
        if not is_probable_prime(self.p, certainty):
            raise InvalidInputError("p failed primality test", parameter_name="p", parameter_value=self.p)
        if (self.p - 1) % self.q != 0:
            raise InvalidInputError("q does not divide p - 1", parameter_name="q", parameter_value=self.q)
        if not 1 < self.g < self.p:
            raise InvalidInputError("g must lie in (1, p)", parameter_name="g", parameter_value=self.g)
        if gmpy2.powmod(self.g, self.q, self.p) != 1:
            raise InvalidInputError("g does not have order q", parameter_name="g", parameter_value=self.g)
        return self

    def is_valid(self, certainty: int = DEFAULT_CERTAINTY) -> bool:
        try:
            self.validate(certainty)
        except InvalidInputError:
            return False
        return True

    @property
    def scalar_field(self) -> PrimeField:
        """GF(q): the field shares, coefficients and exponents live in."""
        return PrimeField(self.q)

    @property
    def group_field(self) -> PrimeField:
        """Z_p: the field commitments live in."""
        return PrimeField(self.p)

    @property
    def byte_width(self) -> int:
        return (self.p.bit_length() + 7) // 8

    def to_bytes(self) -> bytes:
        """Canonical encoding: 2-byte width W, then p, q, g as W-byte big-endian integers."""
        width = self.byte_width
        return width.to_bytes(2, "big") + b"".join(int(v).to_bytes(width, "big") for v in (self.p, self.q, self.g))

    @classmethod
    def from_bytes(cls, data: bytes, certainty: int = DEFAULT_CERTAINTY) -> "Parameters":
        if not isinstance(data, (bytes, bytearray)):
            raise TypeError("data must be bytes")
        if len(data) < 2:
            raise SerializationError("Parameter encoding is truncated", data_format="canonical")
        width = int.from_bytes(data[:2], "big")
        if width == 0 or len(data) != 2 + 3 * width:
            raise SerializationError(
                "Parameter encoding has the wrong length",
                detailed_info=f"width {width}, {len(data)} bytes",
                data_format="canonical",
            )
        p, q, g = (int.from_bytes(data[2 + i * width : 2 + (i + 1) * width], "big") for i in range(3))
        parameters = cls.from_values(p, q, g, certainty)
        if parameters.byte_width != width:
            raise SerializationError("Parameter encoding is not canonical", data_format="canonical")
        return parameters

    def fingerprint(self, use_blake3: bool = True) -> str:
        return _hash_digest(self.to_bytes(), use_blake3).hex()


class _AttemptBudget:
    """Attempt counter shared by every search loop of one generation run."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.used = 0
        self._lock = threading.Lock()

    def take(self) -> bool:
        with self._lock:
            if self.used >= self.limit:
                return False
            self.used += 1
            return True


class ParameterGenerator:
    """
    Searches for (p, q, g) with q | p - 1 and g of order q.

    q is a random prime of the requested bit length, p = k*q + 1 for a
    random even cofactor k of ``config.cofactor_bits`` bits, and
    g = h^((p-1)/q) mod p for a random h, accepted when g != 1. Every
    primality test and generator candidate costs one attempt out of
    ``config.max_attempts``.
    """

    def __init__(self, config: Optional[VSSConfig] = None, rng: Optional[Randomizer] = None) -> None:
        self.config = config or VSSConfig()
        self.rng = rng or secure_random

    def generate(
        self,
        bit_length: Optional[int] = None,
        certainty: Optional[int] = None,
        workers: Optional[int] = None,
    ) -> Parameters:
        bit_length = self.config.q_bits if bit_length is None else bit_length
        certainty = self.config.certainty if certainty is None else certainty
        workers = self.config.workers if workers is None else workers

        if not _is_integer(bit_length) or bit_length < 3:
            raise InvalidInputError("bit_length must be at least 3", parameter_name="bit_length", parameter_value=bit_length)
        if not _is_integer(certainty) or certainty < 1:
            raise InvalidInputError("certainty must be positive", parameter_name="certainty", parameter_value=certainty)
        if not _is_integer(workers) or workers < 1:
            raise InvalidInputError("workers must be positive", parameter_name="workers", parameter_value=workers)

        budget = _AttemptBudget(self.config.max_attempts)
        stop = threading.Event()
        start = time.perf_counter()
        if workers == 1:
            parameters = self._search(bit_length, certainty, budget, stop)
        else:
            parameters = self._search_parallel(bit_length, certainty, budget, stop, workers)

        if parameters is None:
            raise GenerationError(
                "Parameter search exhausted its attempt budget",
                attempts=budget.used,
                detailed_info=f"q_bits={bit_length}, cofactor_bits={self.config.cofactor_bits}, limit={budget.limit}",
            )
        logger.info(
            "Generated parameters: q=%d bits, p=%d bits after %d attempts in %.2fs",
            parameters.q.bit_length(),
            parameters.p.bit_length(),
            budget.used,
            time.perf_counter() - start,
        )
        return parameters

    def _search_parallel(
        self, bits: int, certainty: int, budget: _AttemptBudget, stop: threading.Event, workers: int
    ) -> Optional[Parameters]:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="vss-paramgen") as executor:
            futures = [executor.submit(self._search, bits, certainty, budget, stop) for _ in range(workers)]
            try:
                for future in as_completed(futures):
                    result = future.result()
                    if result is not None:
                        return result
            finally:
                stop.set()
                for future in futures:
                    future.cancel()
        return None

    def _search(self, bits: int, certainty: int, budget: _AttemptBudget, stop: threading.Event) -> Optional[Parameters]:
        while not stop.is_set():
            q = self._find_q(bits, certainty, budget, stop)
            if q is None:
                return None
            p = self._find_p(q, certainty, budget, stop)
            if p is None:
                continue
            g = self._find_generator(p, q, budget, stop)
            if g is None:
                continue
            logger.debug("Found candidate parameters with q=%d bits, p=%d bits", q.bit_length(), p.bit_length())
            return Parameters(p, q, g)
        return None

    def _find_q(self, bits: int, certainty: int, budget: _AttemptBudget, stop: threading.Event) -> Optional["gmpy2.mpz"]:
        top = 1 << (bits - 1)
        while not stop.is_set() and budget.take():
            candidate = mpz(self.rng(top)) | top | 1
            if is_probable_prime(candidate, certainty):
                return candidate
        return None

    def _find_p(
        self, q: "gmpy2.mpz", certainty: int, budget: _AttemptBudget, stop: threading.Event
    ) -> Optional["gmpy2.mpz"]:
        k_bits = self.config.cofactor_bits
        top = 1 << (k_bits - 1)
        # Resample q rather than grinding one q forever
        tries_per_q = max(64, 8 * (q.bit_length() + k_bits))
        for _ in range(tries_per_q):
            if stop.is_set() or not budget.take():
                return None
            k = (mpz(self.rng(top)) | top) & ~1
            p = k * q + 1
            if is_probable_prime(p, certainty):
                return p
        return None

    def _find_generator(
        self, p: "gmpy2.mpz", q: "gmpy2.mpz", budget: _AttemptBudget, stop: threading.Event
    ) -> Optional["gmpy2.mpz"]:
        cofactor = (p - 1) // q
        while not stop.is_set() and budget.take():
            h = mpz(self.rng(int(p) - 3)) + 2
            g = mpz(gmpy2.powmod(h, cofactor, p))
            if g != 1:
                return g
        return None


# --- Polynomial ---


class Polynomial:
    """Polynomial of degree t-1 over GF(q) whose constant term is the secret."""

    __slots__ = ("_coefficients", "field")

    def __init__(self, coefficients: Sequence[FieldElement], field: Union[PrimeField, FieldElement]) -> None:
        self.field = PrimeField.coerce(field)
        if not coefficients:
            raise InvalidInputError("Polynomial needs at least one coefficient", parameter_name="coefficients")
        for coefficient in coefficients:
            if coefficient not in self.field:
                raise InvalidInputError("Coefficient outside [0, q)", parameter_name="coefficients")
        self._coefficients: Tuple["gmpy2.mpz", ...] = tuple(mpz(c) for c in coefficients)

    @classmethod
    def construct(
        cls,
        secret: FieldElement,
        threshold: int,
        field: Union[PrimeField, FieldElement],
        rng: Optional[Randomizer] = None,
    ) -> "Polynomial":
        field = PrimeField.coerce(field)
        if not _is_integer(secret) or not 0 <= secret < field.modulus:
            # The secret itself is deliberately kept out of the error
            raise InvalidInputError("Secret must be an integer in [0, q)", parameter_name="secret")
        if not _is_integer(threshold) or threshold < 1:
            raise InvalidInputError("Threshold must be at least 1", parameter_name="threshold", parameter_value=threshold)
        rng = rng or secure_random
        coefficients = [mpz(secret)] + [field.random_element(rng) for _ in range(threshold - 1)]
        return cls(coefficients, field)

    @property
    def coefficients(self) -> Tuple["gmpy2.mpz", ...]:
        return self._coefficients

    @property
    def threshold(self) -> int:
        return len(self._coefficients)

    @property
    def degree(self) -> int:
        return len(self._coefficients) - 1

    def evaluate(self, x: FieldElement) -> "gmpy2.mpz":
        """Evaluate with Horner's rule, reducing mod q after every step."""
        x = self.field.normalize(x)
        result = mpz(0)
        for coefficient in reversed(self._coefficients):
            result = self.field.add(self.field.mul(result, x), coefficient)
        return result

    def __len__(self) -> int:
        return len(self._coefficients)

    def __repr__(self) -> str:
        return f"Polynomial(degree={self.degree}, {self.field!r})"


# --- Commitments ---


class CommitmentScheme(Protocol):
    """Anything that maps a GF(q) element to a group element homomorphically."""

    def commit(self, value: FieldElement) -> "gmpy2.mpz": ...


class FeldmanCommitment:
    """Discrete-log commitment: commit(x) = g^x mod p."""

    def __init__(self, parameters: Parameters) -> None:
        self.parameters = parameters
        self._group = parameters.group_field
        self._scalar = parameters.scalar_field

    def commit(self, value: FieldElement) -> "gmpy2.mpz":
        return self._group.pow(self.parameters.g, self._scalar.normalize(value))


def _evaluate_commitments(values: Sequence[FieldElement], index: FieldElement, parameters: Parameters) -> "gmpy2.mpz":
    # prod_j C_j^(index^j mod q) mod p; exponents are reduced mod q because
    # every C_j lies in the order-q subgroup
    group = parameters.group_field
    scalar = parameters.scalar_field
    x = scalar.normalize(index)
    exponent = mpz(1)
    result = mpz(1)
    for value in values:
        result = group.mul(result, group.pow(value, exponent))
        exponent = scalar.mul(exponent, x)
    return result


@dataclass(frozen=True)
class CommitmentSet:
    """Public commitments C_0..C_{t-1}, bound to the parameters they were made under."""

    values: Tuple["gmpy2.mpz", ...]
    parameters: Parameters

    def __post_init__(self) -> None:
        if not isinstance(self.parameters, Parameters):
            raise InvalidInputError("parameters must be a Parameters instance", parameter_name="parameters")
        values = tuple(self.values)
        if not values:
            raise InvalidInputError("Commitment set cannot be empty", parameter_name="values")
        if not all(_is_integer(v) for v in values):
            raise InvalidInputError("Commitments must be integers", parameter_name="values")
        object.__setattr__(self, "values", tuple(mpz(v) for v in values))

    @classmethod
    def from_polynomial(
        cls, polynomial: Polynomial, parameters: Parameters, scheme: Optional[CommitmentScheme] = None
    ) -> "CommitmentSet":
        if polynomial.field != parameters.scalar_field:
            raise InvalidInputError("Polynomial is not defined over GF(q) of these parameters", parameter_name="polynomial")
        scheme = scheme or FeldmanCommitment(parameters)
        return cls(tuple(scheme.commit(c) for c in polynomial.coefficients), parameters)

    @property
    def threshold(self) -> int:
        return len(self.values)

    @property
    def secret_commitment(self) -> "gmpy2.mpz":
        """g^secret mod p."""
        return self.values[0]

    def expected_at(self, index: FieldElement) -> "gmpy2.mpz":
        return _evaluate_commitments(self.values, index, self.parameters)

    def __len__(self) -> int:
        return len(self.values)

    def __iter__(self) -> Iterator["gmpy2.mpz"]:
        return iter(self.values)

    def __getitem__(self, item: int) -> "gmpy2.mpz":
        return self.values[item]


_FOREIGN_PARAMETERS = "commitments were made under different parameters"


class Share(NamedTuple):
    index: "gmpy2.mpz"
    value: "gmpy2.mpz"


@dataclass(frozen=True)
class VerificationFailure:
    """A rejected share. Rejection is an expected protocol outcome, so this is data, not an exception."""

    index: Optional[int]
    reason: str
    expected: Optional[int] = None
    actual: Optional[int] = None
    timestamp: int = dataclasses.field(default_factory=lambda: int(time.time()))


def _inspect_share(
    share: Any,
    commitments: Union[CommitmentSet, Sequence[FieldElement]],
    parameters: Optional[Parameters],
    scheme: Optional[CommitmentScheme] = None,
) -> Optional[VerificationFailure]:
    """Return None for a share that matches the commitments, else why it does not."""
    if isinstance(commitments, CommitmentSet):
        if parameters is not None and commitments.parameters != parameters:
            return VerificationFailure(None, _FOREIGN_PARAMETERS)
        parameters = commitments.parameters
        values: Tuple[Any, ...] = commitments.values
    else:
        if not isinstance(parameters, Parameters):
            return VerificationFailure(None, "no parameters to verify against")
        try:
            values = tuple(commitments)
        except TypeError:
            return VerificationFailure(None, "commitments are not a sequence")

    if not isinstance(share, tuple) or len(share) != 2:
        return VerificationFailure(None, "share is not an (index, value) pair")
    index, value = share
    if not _is_integer(index) or not 0 < index < parameters.q:
        return VerificationFailure(None, "index outside [1, q)")
    if not _is_integer(value) or not 0 <= value < parameters.q:
        return VerificationFailure(int(index), "value outside [0, q)")
    if not values:
        return VerificationFailure(int(index), "no commitments")
    for commitment in values:
        if not _is_integer(commitment) or not 0 < commitment < parameters.p:
            return VerificationFailure(int(index), "commitment outside [1, p)")
        if gmpy2.powmod(commitment, parameters.q, parameters.p) != 1:
            return VerificationFailure(int(index), "commitment outside the order-q subgroup")

    scheme = scheme or FeldmanCommitment(parameters)
    actual = scheme.commit(value)
    expected = _evaluate_commitments(values, index, parameters)
    if actual != expected:
        return VerificationFailure(int(index), "share does not match commitments", int(expected), int(actual))
    return None


def verify_share(
    share: Any,
    commitments: Union[CommitmentSet, Sequence[FieldElement]],
    parameters: Optional[Parameters] = None,
    scheme: Optional[CommitmentScheme] = None,
) -> bool:
    """
    Check g^v == prod_j C_j^(i^j mod q) (mod p) for share (i, v).

    Never raises: malformed shares, malformed commitments and commitments
    made under other parameters all verify as False.
    """
    failure = _inspect_share(share, commitments, parameters, scheme)
    if failure is None:
        return True
    if failure.reason == _FOREIGN_PARAMETERS:
        logger.warning("Share verification against foreign parameters refused")
    else:
        logger.debug("Share at index %s rejected: %s", failure.index, failure.reason)
    return False


def lagrange_coefficient(
    xs: Sequence[FieldElement], i: int, field: Union[PrimeField, FieldElement], at: FieldElement = 0
) -> "gmpy2.mpz":
    """L_i(at) = prod_{j != i} (at - x_j) * (x_i - x_j)^-1 over the given field."""
    field = PrimeField.coerce(field)
    xi = xs[i]
    result = mpz(1)
    for j, xj in enumerate(xs):
        if j == i:
            continue
        result = field.mul(result, field.mul(field.sub(at, xj), field.inverse(field.sub(xi, xj))))
    return result


def reconstruct_secret(
    shares: Sequence[Tuple[FieldElement, FieldElement]],
    threshold: int,
    modulus: Union[PrimeField, FieldElement],
) -> "gmpy2.mpz":
    """
    Recover P(0) from at least ``threshold`` shares by Lagrange interpolation.

    Input problems are reported before any arithmetic: a repeated index
    raises DuplicateIndexError, too few shares InsufficientSharesError.
    """
    field = PrimeField.coerce(modulus)
    if not _is_integer(threshold) or threshold < 1:
        raise InvalidInputError("Threshold must be at least 1", parameter_name="threshold", parameter_value=threshold)

    xs: List["gmpy2.mpz"] = []
    ys: List["gmpy2.mpz"] = []
    seen = set()
    for entry in shares:
        if not isinstance(entry, tuple) or len(entry) != 2:
            raise InvalidInputError("Shares must be (index, value) pairs", parameter_name="shares")
        index, value = entry
        if not _is_integer(index) or not _is_integer(value):
            raise InvalidInputError("Share index and value must be integers", parameter_name="shares")
        if index in seen:
            raise DuplicateIndexError(f"Duplicate share index {index}", index=index)
        seen.add(index)
        if not 0 < index < field.modulus:
            raise InvalidInputError("Share index outside [1, q)", parameter_name="index", parameter_value=index)
        xs.append(mpz(index))
        ys.append(field.normalize(value))

    if len(xs) < threshold:
        raise InsufficientSharesError(
            f"Need at least {threshold} shares to reconstruct, got {len(xs)}",
            required=threshold,
            provided=len(xs),
        )

    secret = mpz(0)
    for i, yi in enumerate(ys):
        secret = field.add(secret, field.mul(yi, lagrange_coefficient(xs, i, field)))
    return secret


# --- Dealer ---


class Dealer:
    """Builds the sharing polynomial, its commitments and one share per player."""

    def __init__(
        self,
        parameters: Parameters,
        rng: Optional[Randomizer] = None,
        scheme: Optional[CommitmentScheme] = None,
        config: Optional[VSSConfig] = None,
    ) -> None:
        if not isinstance(parameters, Parameters):
            raise InvalidInputError("parameters must be a Parameters instance", parameter_name="parameters")
        self.parameters = parameters
        self.rng = rng or secure_random
        self.scheme = scheme or FeldmanCommitment(parameters)
        self.config = config or VSSConfig()

    def validate_request(self, n: int, t: int) -> None:
        if not _is_integer(n) or not _is_integer(t):
            raise InvalidInputError("n and t must be integers", parameter_name="n, t", parameter_value=(n, t))
        if t < 1:
            raise InvalidInputError("Threshold must be at least 1", parameter_name="t", parameter_value=t)
        if t > n:
            raise InvalidInputError(
                f"Threshold {t} cannot be greater than number of shares {n}", parameter_name="t", parameter_value=t
            )
        # An index congruent to 0 mod q would hand out P(0), the secret itself
        if n >= self.parameters.q:
            raise InvalidInputError("Number of shares must be less than q", parameter_name="n", parameter_value=n)

    def create_polynomial(self, secret: FieldElement, t: int) -> Polynomial:
        return Polynomial.construct(secret, t, self.parameters.scalar_field, self.rng)

    def issue(self, polynomial: Polynomial, n: int) -> List[Share]:
        indices = [mpz(i) for i in range(1, n + 1)]
        if self.config.workers > 1:
            with ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix="vss-dealer") as executor:
                values = list(executor.map(polynomial.evaluate, indices))
        else:
            values = [polynomial.evaluate(i) for i in indices]
        return [Share(i, v) for i, v in zip(indices, values)]

    def deal(self, secret: FieldElement, n: int, t: int) -> Tuple[Polynomial, CommitmentSet, List[Share]]:
        """Like share(), but also hands back the polynomial for a session to keep."""
        self.validate_request(n, t)
        polynomial = self.create_polynomial(secret, t)
        commitments = CommitmentSet.from_polynomial(polynomial, self.parameters, self.scheme)
        shares = self.issue(polynomial, n)
        if self.config.self_check:
            self._self_check(shares, commitments)
        logger.debug("Dealt %d shares with threshold %d", n, t)
        return polynomial, commitments, shares

    def share(self, secret: FieldElement, n: int, t: int) -> Tuple[CommitmentSet, List[Share]]:
        _, commitments, shares = self.deal(secret, n, t)
        return commitments, shares

    def _self_check(self, shares: Sequence[Share], commitments: CommitmentSet) -> None:
        for issued in shares:
            if not verify_share(issued, commitments, self.parameters, self.scheme):
                raise SecurityError(
                    "Dealer self-check failed",
                    detailed_info=f"share at index {int(issued.index)} does not match the dealer's own commitments",
                )


def share(
    secret: FieldElement, n: int, t: int, parameters: Parameters, rng: Optional[Randomizer] = None
) -> Tuple[CommitmentSet, List[Share]]:
    """Split secret into n shares with threshold t using a one-off Dealer."""
    return Dealer(parameters, rng=rng).share(secret, n, t)


# --- Player ---


class Player:
    """
    One share holder: verifies what it receives and reconstructs once it
    holds at least t verified shares.
    """

    def __init__(
        self,
        parameters: Parameters,
        threshold: Optional[int] = None,
        index: Optional[int] = None,
        scheme: Optional[CommitmentScheme] = None,
    ) -> None:
        if not isinstance(parameters, Parameters):
            raise InvalidInputError("parameters must be a Parameters instance", parameter_name="parameters")
        self.parameters = parameters
        self.threshold = threshold
        self.index = index
        self.scheme = scheme or FeldmanCommitment(parameters)
        self.commitments: Optional[CommitmentSet] = None
        self.rejected: List[VerificationFailure] = []
        self._shares: Dict[int, Share] = {}

    def verify(self, share: Any, commitments: Union[CommitmentSet, Sequence[FieldElement]]) -> bool:
        return verify_share(share, commitments, self.parameters, self.scheme)

    def batch_verify(
        self, shares: Sequence[Any], commitments: Union[CommitmentSet, Sequence[FieldElement]]
    ) -> VerificationResult:
        """Verify several shares; results are keyed by position in ``shares``."""
        results = {position: self.verify(entry, commitments) for position, entry in enumerate(shares)}
        return all(results.values()), results

    def accept_commitments(self, commitments: CommitmentSet) -> None:
        if not isinstance(commitments, CommitmentSet):
            raise InvalidInputError("commitments must be a CommitmentSet", parameter_name="commitments")
        if commitments.parameters != self.parameters:
            raise ProtocolViolationError(
                "Commitments were made under different parameters",
                detailed_info=(
                    f"local {self.parameters.fingerprint()[:16]}, "
                    f"received {commitments.parameters.fingerprint()[:16]}"
                ),
            )
        if self.threshold is not None and commitments.threshold != self.threshold:
            raise ProtocolViolationError(
                f"Expected {self.threshold} commitments, received {commitments.threshold}"
            )
        if self.commitments is not None and commitments != self.commitments:
            raise ProtocolViolationError("Commitments differ from those already accepted")
        self.commitments = commitments
        self.threshold = commitments.threshold

    def receive(self, share: Any, commitments: Optional[CommitmentSet] = None) -> bool:
        """Verify a delivered share and keep it if valid; rejections land in ``rejected``."""
        if commitments is not None:
            self.accept_commitments(commitments)
        if self.commitments is None:
            raise InvalidInputError("No commitments to verify against", parameter_name="commitments")

        failure = _inspect_share(share, self.commitments, self.parameters, self.scheme)
        if failure is not None:
            self.rejected.append(failure)
            logger.warning("Rejected share at index %s: %s", failure.index, failure.reason)
            return False
        index, value = share
        self._shares[int(index)] = Share(mpz(index), mpz(value))
        return True

    @property
    def shares(self) -> List[Share]:
        return [self._shares[i] for i in sorted(self._shares)]

    @property
    def has_quorum(self) -> bool:
        return self.threshold is not None and len(self._shares) >= self.threshold

    def discard_shares(self) -> None:
        self._shares.clear()

    def reconstruct(
        self,
        shares: Optional[Sequence[Tuple[FieldElement, FieldElement]]] = None,
        threshold: Optional[int] = None,
    ) -> "gmpy2.mpz":
        threshold = self.threshold if threshold is None else threshold
        if threshold is None:
            raise InvalidInputError("Threshold is unknown; receive commitments first", parameter_name="threshold")
        return reconstruct_secret(self.shares if shares is None else shares, threshold, self.parameters.scalar_field)


# --- Session ---


class SessionState(Enum):
    INITIALIZED = "initialized"
    PARAMETERS_READY = "parameters_ready"
    SHARES_ISSUED = "shares_issued"
    PARTIALLY_RECONSTRUCTED = "partially_reconstructed"
    RECONSTRUCTED = "reconstructed"


class SharingSession:
    """
    One sharing event from parameters to reconstruction.

    The polynomial and issued shares are dropped once the secret is
    reconstructed; the commitments stay so late shares can still be
    verified. A new secret needs a new session.
    """

    def __init__(
        self,
        parameters: Optional[Parameters] = None,
        config: Optional[VSSConfig] = None,
        rng: Optional[Randomizer] = None,
    ) -> None:
        self.config = config or VSSConfig()
        self.rng = rng or secure_random
        self.parameters = parameters
        self.state = SessionState.PARAMETERS_READY if parameters is not None else SessionState.INITIALIZED
        self.n: Optional[int] = None
        self.t: Optional[int] = None
        self.commitments: Optional[CommitmentSet] = None
        self.issued: Tuple[Share, ...] = ()
        self._polynomial: Optional[Polynomial] = None
        self._player: Optional[Player] = None
        self._secret: Optional["gmpy2.mpz"] = None

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            raise SessionStateError(
                f"Operation not allowed in state {self.state.value}", current_state=self.state.value
            )

    def _active_player(self) -> Player:
        if self._player is None:
            raise SessionStateError("No shares issued yet", current_state=self.state.value)
        return self._player

    def generate_parameters(self, bit_length: Optional[int] = None, certainty: Optional[int] = None) -> Parameters:
        self._require(SessionState.INITIALIZED)
        self.parameters = ParameterGenerator(self.config, self.rng).generate(bit_length, certainty)
        self.state = SessionState.PARAMETERS_READY
        return self.parameters

    def issue(self, secret: FieldElement, n: int, t: int) -> Tuple[CommitmentSet, List[Share]]:
        self._require(SessionState.PARAMETERS_READY)
        parameters = self.parameters
        if parameters is None:
            raise SessionStateError("No parameters to issue shares under", current_state=self.state.value)
        dealer = Dealer(parameters, rng=self.rng, config=self.config)
        self._polynomial, self.commitments, shares = dealer.deal(secret, n, t)
        self.n, self.t = n, t
        self.issued = tuple(shares)
        self._player = Player(parameters, threshold=t)
        self._player.accept_commitments(self.commitments)
        self.state = SessionState.SHARES_ISSUED
        return self.commitments, list(shares)

    def verify(self, share: Any) -> bool:
        if self.commitments is None:
            raise SessionStateError("No commitments issued yet", current_state=self.state.value)
        return verify_share(share, self.commitments)

    def collect(self, share: Any) -> bool:
        self._require(SessionState.SHARES_ISSUED, SessionState.PARTIALLY_RECONSTRUCTED)
        accepted = self._active_player().receive(share)
        if accepted:
            self.state = SessionState.PARTIALLY_RECONSTRUCTED
        return accepted

    @property
    def collected(self) -> int:
        return len(self._player.shares) if self._player is not None else 0

    @property
    def polynomial(self) -> Optional[Polynomial]:
        return self._polynomial

    def reconstruct(self) -> "gmpy2.mpz":
        if self.state is SessionState.RECONSTRUCTED and self._secret is not None:
            return self._secret
        self._require(SessionState.SHARES_ISSUED, SessionState.PARTIALLY_RECONSTRUCTED)
        secret = self._active_player().reconstruct()
        self._secret = secret
        self.state = SessionState.RECONSTRUCTED
        self._retire()
        return secret

    def _retire(self) -> None:
        self._polynomial = None
        self.issued = ()
        if self._player is not None:
            self._player.discard_shares()
        logger.debug("Session reconstructed; polynomial and shares retired")


# --- Serialization ---


def _int_to_bytes(value: FieldElement, width: int) -> bytes:
    return int(value).to_bytes(width, "big")


def serialize_commitments(commitments: CommitmentSet) -> str:
    """Encode commitments with their parameters for broadcast."""
    if not isinstance(commitments, CommitmentSet):
        raise TypeError("commitments must be a CommitmentSet")
    parameters = commitments.parameters
    width = parameters.byte_width
    payload = {
        "version": VSS_VERSION,
        "p": _int_to_bytes(parameters.p, width),
        "q": _int_to_bytes(parameters.q, width),
        "g": _int_to_bytes(parameters.g, width),
        "commitments": [_int_to_bytes(c, width) for c in commitments.values],
    }
    packed = msgpack.packb(payload, use_bin_type=True)
    wrapper = {"data": packed, "checksum": compute_checksum(packed)}
    return urlsafe_b64encode(msgpack.packb(wrapper, use_bin_type=True)).decode("utf-8")


def _unpack(data: bytes, what: str) -> Any:
    try:
        return msgpack.unpackb(data, raw=False)
    except (ValueError, TypeError, msgpack.exceptions.UnpackException) as exc:
        raise SerializationError(f"Malformed {what}", detailed_info=str(exc), data_format="msgpack") from exc


def deserialize_commitments(
    data: str, expected_parameters: Optional[Parameters] = None, certainty: int = DEFAULT_CERTAINTY
) -> CommitmentSet:
    """
    Decode broadcast commitments.

    The checksum is checked before anything else is trusted, then the
    version, then the embedded parameters are validated and, if
    ``expected_parameters`` is given, compared with it.
    """
    if not isinstance(data, str):
        raise TypeError("data must be a string")
    try:
        decoded = urlsafe_b64decode(data.encode("utf-8"))
    except ValueError as exc:
        raise SerializationError("Malformed base64 encoding", detailed_info=str(exc), data_format="base64") from exc

    wrapper = _unpack(decoded, "commitment wrapper")
    if not isinstance(wrapper, dict) or set(wrapper) != {"data", "checksum"}:
        raise SerializationError("Invalid wrapper structure", data_format="msgpack")
    packed, checksum = wrapper["data"], wrapper["checksum"]
    if not isinstance(packed, bytes) or not _is_integer(checksum):
        raise SerializationError("Invalid wrapper field types", data_format="msgpack")

    actual = compute_checksum(packed)
    if actual != checksum:
        raise SecurityError(
            "Data integrity check failed", detailed_info=f"Checksum mismatch: expected {checksum}, computed {actual}"
        )
    checksum_info = {"valid": True, "value": actual}

    payload = _unpack(packed, "commitment payload")
    if not isinstance(payload, dict):
        raise SerializationError("Invalid payload structure", data_format="msgpack", checksum_info=checksum_info)
    version = payload.get("version")
    if version != VSS_VERSION:
        raise SerializationError(
            "Unsupported VSS version",
            detailed_info=f"Unsupported VSS version: {version!r}, expected {VSS_VERSION}",
            data_format="msgpack",
            checksum_info=checksum_info,
        )
    missing = [key for key in ("p", "q", "g", "commitments") if key not in payload]
    if missing:
        raise SerializationError(
            f"Missing fields: {', '.join(missing)}", data_format="msgpack", checksum_info=checksum_info
        )
    raw_values = payload["commitments"]
    fields = [payload["p"], payload["q"], payload["g"]]
    if not isinstance(raw_values, list) or not all(isinstance(v, bytes) for v in fields + raw_values):
        raise SerializationError("Integers must be encoded as bytes", data_format="msgpack", checksum_info=checksum_info)
    if not raw_values:
        raise SerializationError("Commitment list is empty", data_format="msgpack", checksum_info=checksum_info)

    p, q, g = (int.from_bytes(v, "big") for v in fields)
    parameters = Parameters.from_values(p, q, g, certainty)
    if expected_parameters is not None and parameters != expected_parameters:
        raise ProtocolViolationError(
            "Commitment parameters do not match local parameters",
            detailed_info=(
                f"local {expected_parameters.fingerprint()[:16]}, received {parameters.fingerprint()[:16]}"
            ),
        )
    return CommitmentSet(tuple(int.from_bytes(v, "big") for v in raw_values), parameters)
