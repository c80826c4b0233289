"""
Validation engine - declarative rules attached to model classes.

Rules are stored per class in registration order and inherited by
subclasses. ``is_valid`` is async because some rules (uniqueness, custom
async rules) consult the data source; rules always run one after the other
so the resulting errors do not depend on timing.

Usage:
    ```python
    class User(Model):
        email = Property(str)
        age = Property("number")

    User.validates_presence_of("email")
    User.validates_format_of("email", with_=r"^\\S+@\\S+$")
    User.validates_numericality_of("age", int_=True, allow_null=True)
    User.validates_uniqueness_of("email", ignore_case=True)

    user = User({"email": "nope"})
    if not await user.is_valid():
        print(user.errors)          # {'email': ['is invalid']}
        print(user.errors.codes)    # {'email': ['format']}
    ```
"""

from __future__ import annotations

import inspect
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .types import UNSET, parse_date

logger = logging.getLogger("datajuggler.validations")

__all__ = [
    "DEFAULT_MESSAGES",
    "Errors",
    "ValidationRule",
    "Validatable",
    "blank",
]


DEFAULT_MESSAGES: Dict[str, Any] = {
    "presence": "can't be blank",
    "absence": "can't be set",
    "unknown-property": "is not defined in the model",
    "length": {"min": "too short", "max": "too long", "is": "length is wrong"},
    "common": {"blank": "is blank", "null": "is null"},
    "numericality": {"int": "is not an integer", "number": "is not a number"},
    "inclusion": "is not included in the list",
    "exclusion": "is reserved",
    "uniqueness": "is not unique",
    "date": "is not a valid date",
}


class Errors(dict):
    """
    Validation errors: property name -> list of messages.

    ``codes`` maps the same property names to the machine-readable codes.
    """

    def __init__(self):
        super().__init__()
        self.codes: Dict[str, List[str]] = {}

    def add(self, field_name: str, message: str, code: str = "invalid") -> None:
        self.setdefault(field_name, []).append(message)
        self.codes.setdefault(field_name, []).append(code)


@dataclass(frozen=True)
class ValidationRule:
    """One registered validation of one attribute."""

    attr: str
    validation: str
    options: Dict[str, Any] = field(default_factory=dict)
    validator: Optional[Callable[..., Any]] = None

    @property
    def is_async(self) -> bool:
        return bool(self.options.get("async"))


def blank(value: Any) -> bool:
    """True for a missing value, None, an empty list, NaN or an empty string."""
    if value is UNSET or value is None:
        return True
    if isinstance(value, list) and len(value) == 0:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and value == "":
        return True
    return False


def _read(inst: Any, attr: str) -> Any:
    return inst._get_value(attr)


# ── Validators ───────────────────────────────────────────────────────────────

def _null_check(inst, attr, rule, err) -> bool:
    value = _read(inst, attr)
    if value is UNSET:
        if not rule.options.get("allow_blank"):
            err("blank")
        return True
    if value is None:
        if not rule.options.get("allow_null"):
            err("null")
        return True
    return False


def validate_presence(inst, attr, rule, err):
    if blank(_read(inst, attr)):
        err()


def validate_absence(inst, attr, rule, err):
    if not blank(_read(inst, attr)):
        err()


def validate_length(inst, attr, rule, err):
    if _null_check(inst, attr, rule, err):
        return
    value = _read(inst, attr)
    try:
        length = len(value)
    except TypeError:
        return
    conf = rule.options
    if conf.get("min") and length < conf["min"]:
        err("min")
    if conf.get("max") and length > conf["max"]:
        err("max")
    if conf.get("is") and length != conf["is"]:
        err("is")


def validate_numericality(inst, attr, rule, err):
    if _null_check(inst, attr, rule, err):
        return
    value = _read(inst, attr)
    if not isinstance(value, (int, float)) or isinstance(value, bool) or (
        isinstance(value, float) and math.isnan(value)
    ):
        return err("number")
    if rule.options.get("int") and (math.isinf(value) or value != round(value)):
        return err("int")


def validate_inclusion(inst, attr, rule, err):
    if _null_check(inst, attr, rule, err):
        return
    if _read(inst, attr) not in rule.options["in"]:
        err()


def validate_exclusion(inst, attr, rule, err):
    if _null_check(inst, attr, rule, err):
        return
    if _read(inst, attr) in rule.options["in"]:
        err()


def validate_format(inst, attr, rule, err):
    if _null_check(inst, attr, rule, err):
        return
    value = _read(inst, attr)
    if not isinstance(value, str) or not re.search(rule.options["with"], value):
        err()


def validate_date(inst, attr, rule, err):
    value = _read(inst, attr)
    if value is UNSET or value is None:
        return
    if parse_date(value) is None:
        err()


def validate_custom(inst, attr, rule, err):
    rule.validator(inst, err)


async def validate_custom_async(inst, attr, rule, err, options):
    result = rule.validator(inst, err)
    if inspect.isawaitable(result):
        await result


async def validate_uniqueness(inst, attr, rule, err, options):
    value = _read(inst, attr)
    if blank(value):
        return
    conf = rule.options
    where: Dict[str, Any] = {}
    if conf.get("ignore_case") and isinstance(value, str):
        where[attr] = re.compile("^" + re.escape(value) + "$", re.IGNORECASE)
    else:
        where[attr] = value
    for key in conf.get("scoped_to") or ():
        scoped = _read(inst, key)
        if scoped is not UNSET:
            where[key] = scoped

    model = type(inst)
    id_name = model._definition.id_name()
    is_new = inst.is_new_record()
    found = await model.find({"where": where}, options)
    if len(found) > 1:
        err()
    elif len(found) == 1 and id_name == attr and is_new:
        err()
    elif len(found) == 1:
        other_id = found[0].get_id()
        own_id = inst.get_id()
        if own_id is None or other_id is None or str(other_id) != str(own_id):
            err()


VALIDATORS: Dict[str, Callable[..., Any]] = {
    "presence": validate_presence,
    "absence": validate_absence,
    "length": validate_length,
    "numericality": validate_numericality,
    "inclusion": validate_inclusion,
    "exclusion": validate_exclusion,
    "format": validate_format,
    "date": validate_date,
    "custom": validate_custom,
}

ASYNC_VALIDATORS: Dict[str, Callable[..., Any]] = {
    "custom": validate_custom_async,
    "uniqueness": validate_uniqueness,
}


def _skip(inst: Any, rule: ValidationRule, kind: str) -> bool:
    condition = rule.options.get(kind)
    if condition is None:
        return False
    if callable(condition):
        outcome = condition(inst)
    else:
        value = _read(inst, condition)
        if value is UNSET:
            value = getattr(inst, condition, None)
        outcome = value() if callable(value) else value
    return not outcome if kind == "if" else bool(outcome)


def _error_reporter(inst: Any, rule: ValidationRule, state: Dict[str, bool]) -> Callable[..., None]:
    def err(kind: Any = None) -> None:
        code = rule.options.get("code") or rule.validation
        message = rule.options.get("message") or DEFAULT_MESSAGES.get(rule.validation) or "is invalid"
        if kind:
            code = f"{code}.{kind}"
            if isinstance(message, dict) and kind in message:
                message = message[kind]
            elif kind in DEFAULT_MESSAGES["common"]:
                message = DEFAULT_MESSAGES["common"][kind]
            else:
                message = "is invalid"
        elif isinstance(message, dict):
            message = "is invalid"
        if kind is not False:
            inst.errors.add(rule.attr, message, code)
        state["failed"] = True
    return err


def _normalize_options(options: Dict[str, Any]) -> Dict[str, Any]:
    return {key.rstrip("_"): value for key, value in options.items()}


# ── Mixin ────────────────────────────────────────────────────────────────────

class Validatable:
    """Class-level rule registration and the instance ``is_valid`` check."""

    _validations: List[ValidationRule] = []

    @classmethod
    def _add_validation(cls, validation: str, attrs, options: Dict[str, Any],
                        validator: Optional[Callable[..., Any]] = None) -> None:
        options = _normalize_options(options)
        rules = [ValidationRule(attr, validation, options, validator) for attr in attrs]
        cls._validations = cls._validations + rules

    @classmethod
    def validates_presence_of(cls, *attrs: str, **options: Any) -> None:
        """Require the attributes to be non-blank."""
        cls._add_validation("presence", attrs, options)

    @classmethod
    def validates_absence_of(cls, *attrs: str, **options: Any) -> None:
        """Require the attributes to be blank."""
        cls._add_validation("absence", attrs, options)

    @classmethod
    def validates_length_of(cls, *attrs: str, **options: Any) -> None:
        """Check length with ``min``, ``max`` or ``is_``."""
        cls._add_validation("length", attrs, options)

    @classmethod
    def validates_numericality_of(cls, *attrs: str, **options: Any) -> None:
        """Require a number; ``int_=True`` requires an integral value."""
        cls._add_validation("numericality", attrs, options)

    @classmethod
    def validates_inclusion_of(cls, *attrs: str, in_, **options: Any) -> None:
        cls._add_validation("inclusion", attrs, {**options, "in": list(in_)})

    @classmethod
    def validates_exclusion_of(cls, *attrs: str, in_, **options: Any) -> None:
        cls._add_validation("exclusion", attrs, {**options, "in": list(in_)})

    @classmethod
    def validates_format_of(cls, *attrs: str, with_, **options: Any) -> None:
        cls._add_validation("format", attrs, {**options, "with": with_})

    @classmethod
    def validates_date_of(cls, *attrs: str, **options: Any) -> None:
        cls._add_validation("date", attrs, options)

    @classmethod
    def validate(cls, attr: str, validator: Callable[..., Any], **options: Any) -> None:
        """Custom rule: ``validator(instance, err)`` calls ``err()`` to fail."""
        cls._add_validation("custom", (attr,), options, validator)

    @classmethod
    def validate_async(cls, attr: str, validator: Callable[..., Any], **options: Any) -> None:
        """Custom rule whose ``validator(instance, err)`` may be a coroutine."""
        cls._add_validation("custom", (attr,), {**options, "async": True}, validator)

    @classmethod
    def validates_uniqueness_of(cls, *attrs: str, **options: Any) -> None:
        """No other persisted instance may share the value (``ignore_case``, ``scoped_to``)."""
        cls._add_validation("uniqueness", attrs, {**options, "async": True})

    async def is_valid(self, data: Any = None, options: Optional[Dict[str, Any]] = None) -> bool:
        """
        Run every rule and return whether the instance is valid.

        Errors are kept on ``self.errors`` (an ``Errors`` dict) or reset to
        False when the instance is valid. ``before_validate`` /
        ``after_validate`` methods on the model run around the rules.
        """
        options = options or {}
        rules = type(self)._validations
        unknown = self._unknown_properties if self._strict else []

        await self._run_hook("before_validate", data)

        if not rules and not unknown:
            self.errors = False
            await self._run_hook("after_validate", data)
            return True

        self.errors = Errors()
        valid = True
        deferred = []

        for rule in rules:
            if rule.is_async:
                deferred.append(rule)
                continue
            if self._rule_failed(rule):
                valid = False

        for name in unknown:
            self.errors.add(name, DEFAULT_MESSAGES["unknown-property"], "unknown-property")
            valid = False

        for rule in deferred:
            if await self._async_rule_failed(rule, options):
                valid = False

        await self._run_hook("after_validate", data)
        if valid:
            self.errors = False
        return valid

    def _rule_failed(self, rule: ValidationRule) -> bool:
        if _skip(self, rule, "if") or _skip(self, rule, "unless"):
            return False
        state = {"failed": False}
        VALIDATORS[rule.validation](self, rule.attr, rule, _error_reporter(self, rule, state))
        return state["failed"]

    async def _async_rule_failed(self, rule: ValidationRule, options: Dict[str, Any]) -> bool:
        if _skip(self, rule, "if") or _skip(self, rule, "unless"):
            return False
        state = {"failed": False}
        await ASYNC_VALIDATORS[rule.validation](
            self, rule.attr, rule, _error_reporter(self, rule, state), options
        )
        return state["failed"]

    async def _run_hook(self, name: str, data: Any) -> None:
        hook = getattr(self, name, None)
        if not callable(hook):
            return
        result = hook(data)
        if inspect.isawaitable(result):
            await result
