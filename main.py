import asyncio
import itertools
import logging
import os
import random
import re
import time
import traceback
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import (
    Any,
    AsyncGenerator,
    Callable,
    Concatenate,
    Coroutine,
    Dict,
    FrozenSet,
    Generic,
    Iterator,
    List,
    Literal,
    Optional,
    ParamSpec,
    Sequence,
    Set,
    Tuple,
    Type,
    TypeVar,
)
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import aiofiles
import aiohttp
import interactions
import orjson
from cachetools import TTLCache
from interactions.api.events import Component, ExtensionUnload, MessageCreate, Startup
from interactions.client.errors import HTTPException, NotFound
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from yarl import URL

BASE_DIR: str = os.path.dirname(os.path.abspath(__file__))
LOG_FILE: str = os.path.join(BASE_DIR, "counting.log")
CONFIG_PATH: Path = Path(os.environ.get("CONFIG_PATH", os.path.join(BASE_DIR, "config.json")))
STORE_PATH: Path = Path(os.environ.get("STORE_PATH", os.path.join(BASE_DIR, "store.json")))

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
formatter = logging.Formatter(
    "%(asctime)s | %(process)d:%(thread)d | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d - %(message)s",
    "%Y-%m-%d %H:%M:%S.%f %z",
)
file_handler = RotatingFileHandler(
    LOG_FILE, maxBytes=1024 * 1024, backupCount=1, encoding="utf-8"
)
file_handler.setFormatter(formatter)
logger.addHandler(file_handler)


# Model


T = TypeVar("T", bound=BaseModel)
R = TypeVar("R")

P = ParamSpec("P")


class EmbedColor(Enum):
    OFF = 0x5D5A58
    FATAL = 0xFF4343
    ERROR = 0xE81123
    WARN = 0xFFB900
    INFO = 0x0078D7
    SUCCESS = 0x1F8B4C


class Verdict(Enum):
    IGNORED = auto()
    BUSY = auto()
    REPEAT_SENDER = auto()
    NO_NUMBER = auto()
    ACCEPTED = auto()
    BROKEN = auto()
    FAILED = auto()


class CatalogResult(Enum):
    SUCCESS = "success"
    INVALID_NAME = "invalid_name"
    CATEGORY_LIMIT_EXCEEDED = "category_limit_exceeded"
    DUPLICATE_CATEGORY = "duplicate_category"
    UNKNOWN_CATEGORY = "unknown_category"
    ROLE_LIMIT_EXCEEDED = "role_limit_exceeded"
    DUPLICATE_ROLE = "duplicate_role"
    ORDER_MISMATCH = "order_mismatch"


class DialogState(Enum):
    SHOWING = auto()
    TIMED_OUT = auto()
    COMPLETED = auto()


class ParserState(Enum):
    PREFIX = auto()
    REPRESENTATION = auto()
    NOTE = auto()


class CountingError(Exception):
    pass


class ConfigInvalid(CountingError):
    pass


class ChannelNotFound(CountingError):
    pass


class GuildNotFound(CountingError):
    pass


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str = Field(repr=False)
    radix: Literal[2, 10, 16]
    channel: int
    guild: int
    resume_on_error: bool = False
    timezone: str

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone {value!r}") from e
        return value

    @classmethod
    def load(cls, path: Path) -> "Settings":
        try:
            return cls.model_validate_json(path.read_bytes())
        except (OSError, ValidationError) as e:
            raise ConfigInvalid(f"Invalid configuration in {path}: {e}") from e


class Store(BaseModel):
    model_config = ConfigDict(frozen=True)

    previous_timestamp: Optional[int] = None
    previous_user: Optional[int] = None
    previous_value: Optional[int] = None
    roles: Dict[str, Tuple[int, ...]] = Field(
        default_factory=lambda: {"pronouns": ()}
    )
    webhook: Optional[int] = None


@dataclass
class Config:
    NOTICE_DURATION_SECONDS: float = 5.0
    INTERACTION_TIMEOUT_SECONDS: float = 120.0
    IDLE_MIN_INTERVAL_MS: int = 1_000
    IDLE_BIAS_SECONDS: float = 60.0 * 60.0
    MAX_CATEGORIES: int = 10
    SELECT_MENU_MAX_OPTIONS: int = 25
    MAX_MENUS_PER_PAGE: int = 4
    IDENTITY_CACHE_TTL_SECONDS: int = 300
    WEBHOOK_NAME: str = "Counting"
    STORE_FILE: str = STORE_PATH.name

    @property
    def MAX_ROLES_PER_CATEGORY(self) -> int:
        return self.SELECT_MENU_MAX_OPTIONS * self.MAX_MENUS_PER_PAGE


@dataclass(frozen=True)
class Submission:
    representation: str
    note: str
    value: int


@dataclass(frozen=True)
class Identity:
    user_id: int
    name: str
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class OrderDiff:
    missing: Tuple[str, ...] = ()
    unknown: Tuple[str, ...] = ()
    duplicated: Tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.missing or self.unknown or self.duplicated)


@dataclass(frozen=True)
class RoleOption:
    role_id: int
    label: str
    selected: bool


@dataclass(frozen=True)
class RolePage:
    index: int
    category: str
    categories: Tuple[str, ...]
    options: Tuple[RoleOption, ...]

    def menus(self, size: int) -> Tuple[Tuple[RoleOption, ...], ...]:
        return tuple(
            self.options[i : i + size] for i in range(0, len(self.options), size)
        )


@dataclass(frozen=True)
class DialogEvent:
    target: Optional[int] = None
    menu: int = 0
    values: FrozenSet[int] = field(default_factory=frozenset)

    @classmethod
    def turn(cls, target: int) -> "DialogEvent":
        return cls(target=target)

    @classmethod
    def select(cls, menu: int, values: FrozenSet[int]) -> "DialogEvent":
        return cls(menu=menu, values=values)


DIGITS: str = "0123456789abcdef"
WHITESPACE: FrozenSet[str] = frozenset(" \t\r\n")
# Right-to-left mark and the spoiler delimiter used around relayed notes.
DENIED: FrozenSet[str] = frozenset("\u200f|")
RADIX_FORMATS: Dict[int, str] = {2: "b", 10: "d", 16: "x"}


def digit_set(radix: int) -> FrozenSet[str]:
    digits = set(DIGITS[:radix])
    if radix > 10:
        digits.add("x")
    return frozenset(digits)


def parse_int(text: str, radix: int) -> Optional[int]:
    digits = text.strip().lower()
    if radix == 16 and digits.startswith("0x"):
        digits = digits[2:]
    valid = DIGITS[:radix]
    head = "".join(itertools.takewhile(valid.__contains__, digits))
    return int(head, radix) if head else None


def parse_submission(
    text: str, radix: int, expected: Optional[int] = None
) -> Submission:
    digits = digit_set(radix)
    prefix: List[str] = []
    representation: List[str] = []
    note: List[str] = []
    state = ParserState.PREFIX

    for char in text:
        if state is ParserState.PREFIX:
            if char.lower() in digits:
                state = ParserState.REPRESENTATION
            else:
                prefix.append(char)

        if state is ParserState.REPRESENTATION:
            if char.lower() in digits:
                representation.append(char)
                if (
                    expected is not None
                    and parse_int("".join(representation), radix) == expected
                ):
                    state = ParserState.NOTE
                continue
            if char in WHITESPACE:
                continue
            state = ParserState.NOTE

        if state is ParserState.NOTE:
            if char in prefix:
                prefix.remove(char)
            elif char not in DENIED:
                note.append(char)

    value = parse_int(rendered := "".join(representation), radix)
    return Submission(
        representation=rendered,
        note="".join(note).strip(),
        value=0 if value is None else value,
    )


def stringify_number(value: int, radix: int, group_size: int = 4) -> str:
    sign = "-" if value < 0 else ""
    digits = format(abs(value), RADIX_FORMATS[radix])
    head = len(digits) % group_size or group_size
    groups = [
        digits[:head],
        *(digits[i : i + group_size] for i in range(head, len(digits), group_size)),
    ]
    return sign + " ".join(groups)


def format_count(
    value: int, radix: int, note: str = "", strikethrough: bool = False
) -> str:
    rendered = f"`{stringify_number(value, radix)}`"
    if strikethrough:
        rendered = f"~~{rendered}~~"
    return f"{rendered} ||{note}||" if note else rendered


def format_break_notice(
    user_id: int, expected: int, received: int, last: Optional[int], radix: int
) -> str:
    last_value = -1 if last is None else last
    return "\n".join(
        (
            f"<@{user_id}> just malfunctioned!",
            "```diff",
            f"+ {stringify_number(expected, radix)} (decimal {expected})",
            f"- {stringify_number(received, radix)} (decimal {received})",
            "```",
            f"we successfully counted to `{stringify_number(last_value, radix)}` "
            f"(decimal `{last_value}`). let's try again starting from `0`.",
        )
    )


def compute_role_delta(
    held: FrozenSet[int], scope: FrozenSet[int], selected: FrozenSet[int]
) -> Tuple[FrozenSet[int], FrozenSet[int]]:
    added = selected - held
    removed = (held & scope) - selected
    return frozenset(added), frozenset(removed)


def diff_order(old: Sequence[str], new: Sequence[str]) -> OrderDiff:
    return OrderDiff(
        missing=tuple(c for c in old if c not in new),
        unknown=tuple(c for c in new if c not in old),
        duplicated=tuple(
            c for i, c in enumerate(new) if c in old and new.index(c) != i
        ),
    )


class Model(Generic[T]):
    def __init__(self, base_path: Optional[Path] = None) -> None:
        self.base_path: URL = URL(str((base_path or Path(__file__).parent).resolve()))
        self._file_locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def async_retry(max_retries: int = 3, delay: float = 1.0) -> Callable:
        def decorator(func: Callable[..., Coroutine]) -> Callable[..., Coroutine]:
            @wraps(func)
            async def wrapper(*args: Any, **kwargs: Any) -> Any:
                for attempt in range(max_retries):
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        if attempt == max_retries - 1:
                            raise
                        logger.warning(
                            f"Attempt {attempt + 1} failed: {e}. Retrying..."
                        )
                        await asyncio.sleep(delay * (2**attempt))
                return None

            return wrapper

        return decorator

    def resolve(self, file_name: str) -> Path:
        return Path((self.base_path / file_name).path)

    async def get_file_lock(self, file_name: str) -> asyncio.Lock:
        return self._file_locks.setdefault(file_name, asyncio.Lock())

    @asynccontextmanager
    async def file_operation(
        self, file_path: Path, mode: str
    ) -> AsyncGenerator[Any, None]:
        lock = await self.get_file_lock(str(file_path))
        async with lock:
            try:
                async with aiofiles.open(str(file_path), mode=mode) as file:
                    yield file
            except FileNotFoundError:
                raise
            except IOError as e:
                logger.error(f"IO operation failed for {file_path}: {e}", exc_info=True)
                raise

    @async_retry()
    async def load_data(self, file_name: str, model: Type[T]) -> T:
        file_path = self.resolve(file_name)
        try:
            async with self.file_operation(file_path, "rb") as file:
                content = await file.read()

            instance = (
                model.model_validate(orjson.loads(content))
                if content
                else model.model_validate({})
            )
            logger.info(f"Loaded {file_name} from {file_path}")
            return instance

        except FileNotFoundError:
            logger.info(f"{file_path} does not exist yet, using defaults")
            instance = model.model_validate({})
            await self.save_data(file_name, instance)
            return instance

        except Exception as e:
            logger.error(f"Error loading {file_name}: {e}", exc_info=True)
            raise ValueError(f"Failed to load {file_name}") from e

    @async_retry()
    async def save_data(self, file_name: str, data: T) -> None:
        file_path = self.resolve(file_name)
        try:
            json_data = orjson.dumps(
                data.model_dump(mode="json"),
                option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS,
            )

            async with self.file_operation(file_path, "wb") as file:
                await file.write(json_data)

            logger.debug(f"Successfully saved data to {file_name}")

        except Exception as e:
            logger.error(f"Error saving {file_name}: {e}", exc_info=True)
            raise


class StateCell:
    def __init__(self, model: Model[Store], file_name: str, snapshot: Store) -> None:
        self.model: Model[Store] = model
        self.file_name: str = file_name
        self._snapshot: Store = snapshot
        self._lock: asyncio.Lock = asyncio.Lock()

    def read(self) -> Store:
        return self._snapshot

    async def update(self, **delta: Any) -> Store:
        async with self._lock:
            return await self._commit(delta)

    async def update_with(
        self, fn: Callable[[Store], Tuple[Dict[str, Any], R]]
    ) -> R:
        # fn sees the latest snapshot and returns the delta to apply with its result.
        async with self._lock:
            delta, result = fn(self._snapshot)
            if delta:
                await self._commit(delta)
            return result

    async def _commit(self, delta: Dict[str, Any]) -> Store:
        snapshot = self._snapshot.model_copy(update=delta)
        await self.model.save_data(self.file_name, snapshot)
        self._snapshot = snapshot
        return snapshot

    async def flush(self) -> None:
        async with self._lock:
            await self.model.save_data(self.file_name, self._snapshot)


class BusyGuard:
    def __init__(self) -> None:
        self.depth: int = 0

    @property
    def busy(self) -> bool:
        return self.depth > 0

    @contextmanager
    def hold(self) -> Iterator[bool]:
        # Check-and-increment happens before the first await of the holder.
        self.depth += 1
        try:
            yield self.depth == 1
        finally:
            self.depth -= 1


# Controller


class RoleCatalog:
    NAME_PATTERN = re.compile(r"[A-Za-z0-9]{1,32}")

    def __init__(self, cell: StateCell, config: Config) -> None:
        self.cell: StateCell = cell
        self.config: Config = config

    def categories(self) -> Tuple[str, ...]:
        return tuple(self.cell.read().roles)

    def roles(self, category: str) -> Tuple[int, ...]:
        return self.cell.read().roles.get(category, ())

    def non_empty_categories(self) -> Tuple[str, ...]:
        return tuple(c for c, ids in self.cell.read().roles.items() if ids)

    async def register_category(self, name: str) -> CatalogResult:
        def register(store: Store) -> Tuple[Dict[str, Any], CatalogResult]:
            if not self.NAME_PATTERN.fullmatch(name):
                return {}, CatalogResult.INVALID_NAME
            if len(store.roles) >= self.config.MAX_CATEGORIES:
                return {}, CatalogResult.CATEGORY_LIMIT_EXCEEDED
            if name in store.roles:
                return {}, CatalogResult.DUPLICATE_CATEGORY
            return {"roles": {**store.roles, name: ()}}, CatalogResult.SUCCESS

        if (result := await self.cell.update_with(register)) is CatalogResult.SUCCESS:
            logger.info(f"Registered category {name}")
        return result

    async def register_role(self, category: str, role_id: int) -> CatalogResult:
        def register(store: Store) -> Tuple[Dict[str, Any], CatalogResult]:
            if (role_ids := store.roles.get(category)) is None:
                return {}, CatalogResult.UNKNOWN_CATEGORY
            if len(role_ids) >= self.config.MAX_ROLES_PER_CATEGORY:
                return {}, CatalogResult.ROLE_LIMIT_EXCEEDED
            if role_id in role_ids:
                return {}, CatalogResult.DUPLICATE_ROLE
            return {
                "roles": {**store.roles, category: (*role_ids, role_id)}
            }, CatalogResult.SUCCESS

        if (result := await self.cell.update_with(register)) is CatalogResult.SUCCESS:
            logger.info(f"Registered role {role_id} under category {category}")
        return result

    async def order_categories(self, names: Sequence[str]) -> CatalogResult:
        def order(store: Store) -> Tuple[Dict[str, Any], CatalogResult]:
            roles = store.roles
            if diff_order(tuple(roles), names) or len(names) != len(roles):
                return {}, CatalogResult.ORDER_MISMATCH
            return {"roles": {name: roles[name] for name in names}}, CatalogResult.SUCCESS

        if (result := await self.cell.update_with(order)) is CatalogResult.SUCCESS:
            logger.info(f"Ordered categories: {', '.join(names)}")
        return result

    async def prune(self, category: str, role_id: int) -> bool:
        def remove(store: Store) -> Tuple[Dict[str, Any], bool]:
            role_ids = store.roles.get(category, ())
            if role_id not in role_ids:
                return {}, False
            return {
                "roles": {
                    **store.roles,
                    category: tuple(r for r in role_ids if r != role_id),
                }
            }, True

        if pruned := await self.cell.update_with(remove):
            logger.info(f"Pruned stale role {role_id} from category {category}")
        return pruned


class WebhookRelay:
    def __init__(
        self,
        bot: interactions.Client,
        settings: Settings,
        config: Config,
        channel: interactions.GuildText,
        guild: interactions.Guild,
        webhook: interactions.Webhook,
    ) -> None:
        self.bot: interactions.Client = bot
        self.settings: Settings = settings
        self.config: Config = config
        self.channel: interactions.GuildText = channel
        self.guild: interactions.Guild = guild
        self.webhook: interactions.Webhook = webhook
        self.identities: TTLCache = TTLCache(
            maxsize=100, ttl=config.IDENTITY_CACHE_TTL_SECONDS
        )
        self._background: Set[asyncio.Task] = set()

    async def identity(self, user: interactions.BaseUser) -> Identity:
        if (cached := self.identities.get(int(user.id))) is not None:
            return cached

        source: Any = user
        try:
            if member := await self.guild.fetch_member(user.id):
                source = member
        except (HTTPException, aiohttp.ClientError) as e:
            logger.warning(f"Could not fetch member {user.id}: {e!r}")

        avatar = getattr(source, "display_avatar", None)
        identity = Identity(
            user_id=int(user.id),
            name=source.display_name,
            avatar_url=avatar.url if avatar else None,
        )
        self.identities[identity.user_id] = identity
        return identity

    def self_identity(self) -> Identity:
        user = self.bot.user
        avatar = getattr(user, "display_avatar", None)
        return Identity(
            user_id=int(user.id),
            name=user.username,
            avatar_url=avatar.url if avatar else None,
        )

    async def send_count(
        self,
        identity: Identity,
        value: int,
        note: str = "",
        strikethrough: bool = False,
    ) -> None:
        content = format_count(value, self.settings.radix, note, strikethrough)
        try:
            await self.webhook.send(
                content=content,
                username=identity.name,
                avatar_url=identity.avatar_url,
                allowed_mentions=interactions.AllowedMentions(parse=[]),
            )
        except (HTTPException, aiohttp.ClientError) as e:
            logger.error(
                f"Failed to relay {value} for {identity.user_id}: {e!r}", exc_info=True
            )

    async def send_break_notice(
        self, user_id: int, expected: int, received: int, last: Optional[int]
    ) -> None:
        embed = interactions.Embed(
            title="defective unit detected",
            description=format_break_notice(
                user_id, expected, received, last, self.settings.radix
            ),
            color=EmbedColor.WARN.value,
        )
        embed.timestamp = datetime.now(timezone.utc)
        try:
            await self.webhook.send(embeds=[embed])
        except (HTTPException, aiohttp.ClientError) as e:
            logger.error(f"Failed to send break notice: {e!r}", exc_info=True)

    async def send_notice(self, user_id: int, content: str) -> None:
        try:
            message = await self.channel.send(
                content=f"<@{user_id}> {content}",
                allowed_mentions=interactions.AllowedMentions(users=[user_id]),
            )
        except (HTTPException, aiohttp.ClientError) as e:
            logger.error(f"Failed to send notice to {user_id}: {e!r}")
            return
        self.expire(message)

    async def send_private_notice(self, user_id: int, content: str) -> None:
        try:
            if (user := await self.bot.fetch_user(user_id)) is None:
                logger.warning(f"Could not fetch user {user_id} for a private notice")
                return
            message = await user.send(content)
        except (HTTPException, aiohttp.ClientError) as e:
            logger.error(f"Failed to send private notice to {user_id}: {e!r}")
            return
        self.expire(message)

    async def delete(self, message: interactions.Message) -> None:
        try:
            await message.delete()
        except (HTTPException, aiohttp.ClientError) as e:
            logger.error(f"Failed to delete message {message.id}: {e!r}")

    def expire(self, message: interactions.Message) -> None:
        task = asyncio.create_task(
            self._delete_later(message, self.config.NOTICE_DURATION_SECONDS)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _delete_later(self, message: interactions.Message, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.delete(message)


class SubmissionArbiter:
    def __init__(
        self,
        settings: Settings,
        cell: StateCell,
        guard: BusyGuard,
        relay: WebhookRelay,
        clock: Callable[[], int] = lambda: int(time.time() * 1000),
    ) -> None:
        self.settings: Settings = settings
        self.cell: StateCell = cell
        self.guard: BusyGuard = guard
        self.relay: WebhookRelay = relay
        self.clock: Callable[[], int] = clock

    def accepts(self, message: interactions.Message) -> bool:
        author = message.author
        # Message.channel reads the cache and can be None for uncached channels.
        return (
            int(message._channel_id) == self.settings.channel
            and not author.bot
            and not getattr(author, "system", False)
        )

    async def handle(self, message: interactions.Message) -> Verdict:
        if not self.accepts(message):
            return Verdict.IGNORED

        with self.guard.hold() as acquired:
            try:
                return await self.process(message, acquired)
            except Exception as e:
                logger.error(
                    f"Error processing message {message.id}: {e!r}\n{traceback.format_exc()}"
                )
                return Verdict.FAILED
            finally:
                await self.relay.delete(message)

    async def process(self, message: interactions.Message, acquired: bool) -> Verdict:
        author_id = int(message.author.id)

        if not acquired:
            await self.relay.send_notice(
                author_id, "that was too quick, please try again later."
            )
            logger.info(f"Rejected submission from {author_id}: busy")
            return Verdict.BUSY

        state = self.cell.read()
        if author_id == state.previous_user:
            await self.relay.send_notice(author_id, "you can only count once in a row.")
            logger.info(f"Rejected submission from {author_id}: repeat sender")
            return Verdict.REPEAT_SENDER

        previous = state.previous_value
        expected = None if previous is None else previous + 1
        submission = parse_submission(message.content, self.settings.radix, expected)
        if not submission.representation:
            await self.relay.send_notice(
                author_id, "i couldn't find any numbers in your previous message."
            )
            logger.info(f"Rejected submission from {author_id}: no number found")
            return Verdict.NO_NUMBER

        is_correct = expected is None or submission.value == expected
        identity = await self.relay.identity(message.author)
        await self.relay.send_count(
            identity, submission.value, submission.note, strikethrough=not is_correct
        )

        now = self.clock()
        if is_correct:
            await self.cell.update(
                previous_user=author_id,
                previous_value=submission.value,
                previous_timestamp=now,
            )
            logger.info(f"Accepted {submission.value} from {author_id}")
            return Verdict.ACCEPTED

        if self.settings.resume_on_error:
            await self.relay.send_private_notice(
                author_id,
                f"that is not it, the next number is `{stringify_number(expected, self.settings.radix)}`.",
            )
            await self.cell.update(previous_user=author_id, previous_timestamp=now)
        else:
            await self.relay.send_break_notice(
                author_id, expected, submission.value, previous
            )
            await self.cell.update(
                previous_user=author_id, previous_value=-1, previous_timestamp=now
            )
        logger.info(
            f"Sequence broken by {author_id}: expected {expected}, got {submission.value}"
        )
        return Verdict.BROKEN


class IdleScheduler:
    def __init__(
        self,
        config: Config,
        cell: StateCell,
        guard: BusyGuard,
        relay: WebhookRelay,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = lambda: int(time.time() * 1000),
    ) -> None:
        self.config: Config = config
        self.cell: StateCell = cell
        self.guard: BusyGuard = guard
        self.relay: WebhookRelay = relay
        self.rng: random.Random = rng or random.Random()
        self.clock: Callable[[], int] = clock
        self.task: Optional[asyncio.Task] = None

    def next_delay(self) -> float:
        return self.rng.uniform(0, 3 * self.config.IDLE_BIAS_SECONDS)

    async def wake(self) -> bool:
        with self.guard.hold() as acquired:
            if not acquired:
                logger.info("Skipped idle continuation: a submission is in progress")
                return False

            state = self.cell.read()
            now = self.clock()
            if (
                state.previous_value is None
                or state.previous_timestamp is None
                or now - state.previous_timestamp < self.config.IDLE_MIN_INTERVAL_MS
            ):
                return False

            identity = self.relay.self_identity()
            value = state.previous_value + 1
            await self.relay.send_count(identity, value)
            await self.cell.update(
                previous_user=identity.user_id,
                previous_value=value,
                previous_timestamp=now,
            )
            logger.info(f"Counted {value} after idling")
            return True

    async def run(self) -> None:
        while True:
            try:
                await self.wake()
            except Exception as e:
                logger.error(f"Idle continuation failed: {e!r}", exc_info=True)
            delay = self.next_delay()
            logger.info(
                f"Checked at {self.clock()}. Next check scheduled in {delay:.0f} s."
            )
            await asyncio.sleep(delay)

    def start(self) -> None:
        if self.task is None or self.task.done():
            self.task = asyncio.create_task(self.run(), name="idle_continuation")

    def stop(self) -> None:
        if self.task is not None:
            self.task.cancel()
            self.task = None


class RoleDialog:
    def __init__(
        self, user_id: int, catalog: RoleCatalog, view: "RoleDialogView", config: Config
    ) -> None:
        self.user_id: int = user_id
        self.catalog: RoleCatalog = catalog
        self.view: RoleDialogView = view
        self.config: Config = config
        self.index: int = 0
        self.state: DialogState = DialogState.SHOWING

    async def run(self) -> DialogState:
        while self.state is DialogState.SHOWING:
            await self.step()
        logger.info(f"Role dialog for {self.user_id} ended: {self.state.name}")
        return self.state

    async def step(self) -> None:
        categories = self.catalog.non_empty_categories()
        if not 0 <= self.index < len(categories):
            self.state = DialogState.COMPLETED
            await self.view.show_completed()
            return

        page = await self.build_page(categories[self.index], categories)
        if not page.options:
            # Every role of the category was stale; the pruned category drops out.
            return

        await self.view.show_page(page)
        event = await self.view.wait_for_event(
            page, self.config.INTERACTION_TIMEOUT_SECONDS
        )
        if event is None:
            self.state = DialogState.TIMED_OUT
            await self.view.show_timeout()
            return

        if event.target is not None:
            self.index = event.target
            return

        await self.apply_selection(page, event)
        self.index += 1

    async def build_page(self, category: str, categories: Tuple[str, ...]) -> RolePage:
        held = await self.view.held_role_ids()
        options: List[RoleOption] = []
        for role_id in self.catalog.roles(category):
            if (label := await self.view.resolve_role(role_id)) is None:
                await self.catalog.prune(category, role_id)
                continue
            options.append(RoleOption(role_id, label, role_id in held))

        options.sort(key=lambda option: option.label.lower())
        return RolePage(
            index=self.index,
            category=category,
            categories=categories,
            options=tuple(options),
        )

    async def apply_selection(self, page: RolePage, event: DialogEvent) -> None:
        menus = page.menus(self.config.SELECT_MENU_MAX_OPTIONS)
        scope = frozenset(option.role_id for option in menus[event.menu])
        held = await self.view.held_role_ids()
        added, removed = compute_role_delta(held, scope, event.values & scope)
        await self.view.apply(added, removed)
        logger.info(
            f"Updated roles of {self.user_id} in {page.category}: added {sorted(added)}, removed {sorted(removed)}"
        )


class RoleDialogView:
    SELECT_ROLES_PREFIX: str = "select-roles-"
    TURN_PAGE_PREFIX: str = "turn-page-"

    def __init__(
        self,
        bot: interactions.Client,
        ctx: interactions.ComponentContext,
        guild: interactions.Guild,
        config: Config,
    ) -> None:
        self.bot: interactions.Client = bot
        self.ctx: interactions.ComponentContext = ctx
        self.guild: interactions.Guild = guild
        self.config: Config = config
        self.reply: Optional[interactions.Message] = None
        self.components: List[interactions.ActionRow] = []

    async def held_role_ids(self) -> FrozenSet[int]:
        member = await self.guild.fetch_member(self.ctx.author.id, force=True)
        return frozenset(int(role.id) for role in member.roles) if member else frozenset()

    async def resolve_role(self, role_id: int) -> Optional[str]:
        try:
            role = await self.guild.fetch_role(role_id)
        except NotFound:
            return None
        return role.name if role else None

    async def apply(self, added: FrozenSet[int], removed: FrozenSet[int]) -> None:
        member = await self.guild.fetch_member(self.ctx.author.id, force=True)
        if removed:
            await member.remove_roles(
                sorted(removed), reason=f"Remove {', '.join(map(str, sorted(removed)))}"
            )
        if added:
            await member.add_roles(
                sorted(added), reason=f"Add {', '.join(map(str, sorted(added)))}"
            )

    def build_components(self, page: RolePage) -> List[interactions.ActionRow]:
        rows = [
            interactions.ActionRow(
                interactions.StringSelectMenu(
                    *(
                        interactions.StringSelectOption(
                            label=option.label,
                            value=str(option.role_id),
                            default=option.selected,
                        )
                        for option in menu
                    ),
                    custom_id=f"{self.SELECT_ROLES_PREFIX}{page.category}-{i}",
                    placeholder=f"Select {page.category}",
                    min_values=0,
                    max_values=len(menu),
                )
            )
            for i, menu in enumerate(page.menus(self.config.SELECT_MENU_MAX_OPTIONS))
        ]
        rows.append(
            interactions.ActionRow(
                interactions.Button(
                    style=interactions.ButtonStyle.PRIMARY,
                    label="◂",
                    custom_id=f"{self.TURN_PAGE_PREFIX}{page.index - 1}",
                    disabled=page.index == 0,
                ),
                interactions.Button(
                    style=interactions.ButtonStyle.PRIMARY,
                    label="▸",
                    custom_id=f"{self.TURN_PAGE_PREFIX}{page.index + 1}",
                ),
            )
        )
        return rows

    @staticmethod
    def breadcrumb(page: RolePage) -> str:
        return " > ".join(
            f"__**{i}. {category}**__" if i == page.index else f"{i}. {category}"
            for i, category in enumerate(page.categories)
        )

    async def show_page(self, page: RolePage) -> None:
        self.components = self.build_components(page)
        self.reply = await self.ctx.edit(
            embeds=[
                interactions.Embed(
                    title="Role Selection",
                    description=self.breadcrumb(page),
                    color=EmbedColor.INFO.value,
                )
            ],
            components=self.components,
        )

    async def wait_for_event(
        self, page: RolePage, timeout: float
    ) -> Optional[DialogEvent]:
        def check(component: Component) -> bool:
            return int(component.ctx.author.id) == int(self.ctx.author.id)

        try:
            component = await self.bot.wait_for_component(
                messages=self.reply,
                components=self.components,
                check=check,
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return None

        sub_ctx = component.ctx
        await sub_ctx.defer(edit_origin=True)
        if sub_ctx.custom_id.startswith(self.TURN_PAGE_PREFIX):
            return DialogEvent.turn(
                int(sub_ctx.custom_id.removeprefix(self.TURN_PAGE_PREFIX))
            )
        return DialogEvent.select(
            int(sub_ctx.custom_id.rsplit("-", 1)[1]),
            frozenset(int(value) for value in sub_ctx.values),
        )

    async def show_completed(self) -> None:
        await self.ctx.edit(
            embeds=[
                interactions.Embed(
                    title="Role Selection",
                    description="You've updated your roles!",
                    color=EmbedColor.SUCCESS.value,
                )
            ],
            components=[],
        )

    async def show_timeout(self) -> None:
        await self.ctx.edit(
            embeds=[
                interactions.Embed(
                    description=":x: Interaction timed out.",
                    color=EmbedColor.ERROR.value,
                )
            ],
            components=[],
        )


class Counting(interactions.Extension):
    SELECT_ROLES_BUTTON: str = "select-roles"

    def __init__(self, bot: interactions.Client, settings: Settings) -> None:
        self.bot: interactions.Client = bot
        self.settings: Settings = settings
        self.config: Config = Config()
        self.model: Model[Store] = Model(base_path=STORE_PATH.parent)
        self.guard: BusyGuard = BusyGuard()
        self.cell: Optional[StateCell] = None
        self.catalog: Optional[RoleCatalog] = None
        self.relay: Optional[WebhookRelay] = None
        self.arbiter: Optional[SubmissionArbiter] = None
        self.scheduler: Optional[IdleScheduler] = None
        self.guild: Optional[interactions.Guild] = None

    # Decorator

    ContextType = TypeVar("ContextType", bound=interactions.BaseContext)

    @staticmethod
    def error_handler(
        func: Callable[Concatenate[Any, ContextType, P], Coroutine[Any, Any, Any]]
    ) -> Callable[Concatenate[Any, ContextType, P], Coroutine[Any, Any, Any]]:
        @wraps(func)
        async def wrapper(
            self, ctx: interactions.BaseContext, *args: P.args, **kwargs: P.kwargs
        ) -> Any:
            try:
                result = await asyncio.shield(func(self, ctx, *args, **kwargs))
                logger.info(f"`{func.__name__}` completed successfully: {result}")
                return result
            except asyncio.CancelledError as ce:
                logger.warning(
                    f"{func.__name__} was cancelled",
                    extra={"exc_info": True, "stack_info": True},
                )
                raise ce from None
            except Exception as e:
                error_msg = f"Error in {func.__name__}: {e!r}\n{traceback.format_exc()}"
                logger.exception(error_msg)
                raise e from None

        return wrapper

    # Startup

    @interactions.listen(Startup)
    async def on_startup(self, event: Startup) -> None:
        try:
            store = await self.model.load_data(self.config.STORE_FILE, Store)
            self.cell = StateCell(self.model, self.config.STORE_FILE, store)

            try:
                channel = await self.bot.fetch_channel(self.settings.channel)
            except NotFound:
                channel = None
            if not isinstance(channel, interactions.GuildText):
                raise ChannelNotFound(
                    f"text channel '{self.settings.channel}' not found"
                )

            try:
                guild = await self.bot.fetch_guild(self.settings.guild)
            except NotFound:
                guild = None
            if not guild:
                raise GuildNotFound(f"guild '{self.settings.guild}' not found")
            self.guild = guild

            webhook = await self.ensure_webhook(channel)
            self.relay = WebhookRelay(
                self.bot, self.settings, self.config, channel, guild, webhook
            )
            self.catalog = RoleCatalog(self.cell, self.config)
            self.arbiter = SubmissionArbiter(
                self.settings, self.cell, self.guard, self.relay
            )
            self.scheduler = IdleScheduler(
                self.config, self.cell, self.guard, self.relay
            )

            self.save_store.start()
            self.scheduler.start()
            logger.info(f"Bot is up at {self.bot.latency * 1000:.0f} ms ping.")

        except Exception as e:
            logger.critical(f"Startup failed: {e!r}", exc_info=True)
            await self.bot.stop()

    async def ensure_webhook(
        self, channel: interactions.GuildText
    ) -> interactions.Webhook:
        if webhook_id := self.cell.read().webhook:
            webhooks = await channel.fetch_webhooks()
            if webhook := next((w for w in webhooks if int(w.id) == webhook_id), None):
                return webhook
            logger.warning(f"Stored webhook {webhook_id} not found, creating a new one")

        webhook = await channel.create_webhook(name=self.config.WEBHOOK_NAME)
        await self.cell.update(webhook=int(webhook.id))
        logger.info(f"Created webhook {webhook.id} in channel {channel.id}")
        return webhook

    # View methods

    async def create_embed(
        self,
        title: str,
        description: str = "",
        color: EmbedColor = EmbedColor.INFO,
    ) -> interactions.Embed:
        embed: interactions.Embed = interactions.Embed(
            title=title, description=description, color=color.value
        )
        embed.timestamp = datetime.now(timezone.utc)
        return embed

    async def send_response(
        self,
        ctx: interactions.InteractionContext,
        title: str,
        message: str,
        color: EmbedColor,
        ephemeral: bool = True,
    ) -> None:
        embed: interactions.Embed = await self.create_embed(title, message, color)
        await ctx.send(embed=embed, ephemeral=ephemeral)

    async def send_error(
        self,
        ctx: interactions.InteractionContext,
        message: str,
        ephemeral: bool = True,
    ) -> None:
        await self.send_response(ctx, "Error", message, EmbedColor.ERROR, ephemeral)

    async def send_success(
        self,
        ctx: interactions.InteractionContext,
        message: str,
        ephemeral: bool = True,
    ) -> None:
        await self.send_response(ctx, "Success", message, EmbedColor.INFO, ephemeral)

    async def ensure_ready(self, ctx: interactions.InteractionContext) -> bool:
        if self.cell is None or self.catalog is None or self.relay is None:
            await self.send_error(ctx, "The bot is still starting up, try again soon.")
            return False
        return True

    # Events

    @interactions.listen(MessageCreate)
    async def on_message_create(self, event: MessageCreate) -> None:
        if self.arbiter is None:
            return
        try:
            verdict = await self.arbiter.handle(event.message)
            if verdict is not Verdict.IGNORED:
                logger.debug(f"Message {event.message.id}: {verdict.name}")
        except Exception as e:
            logger.error(f"Error handling message: {e!r}", exc_info=True)

    @interactions.listen(ExtensionUnload)
    async def on_extension_unload(self, event: ExtensionUnload) -> None:
        self.save_store.stop()
        if self.scheduler is not None:
            self.scheduler.stop()
        if self.cell is not None:
            await self.cell.flush()
            logger.info("Store saved on unload")

    # Tasks

    @interactions.Task.create(interactions.IntervalTrigger(hours=1))
    async def save_store(self) -> None:
        if self.cell is None:
            return
        try:
            await self.cell.flush()
            logger.info("Store saved")
        except Exception as e:
            logger.error(f"Failed to save store: {e!r}", exc_info=True)

    # Command groups

    module_base = interactions.SlashCommand(
        name="counting",
        description="Counting management commands",
        default_member_permissions=interactions.Permissions.ADMINISTRATOR,
    )
    module_group_sequence: interactions.SlashCommand = module_base.group(
        name="sequence", description="Counting sequence management"
    )
    module_group_role: interactions.SlashCommand = module_base.group(
        name="role", description="Role category management"
    )

    @interactions.slash_command(name="ping", description="Check the bot latency")
    @error_handler
    async def ping(self, ctx: interactions.SlashContext) -> None:
        await ctx.send(f"Mwah in {self.bot.latency * 1000:.0f} ms :kissing_heart:")

    # Sequence commands

    @module_group_sequence.subcommand("get", sub_cmd_description="Get the previous value")
    @error_handler
    async def get_sequence(self, ctx: interactions.SlashContext) -> None:
        if not await self.ensure_ready(ctx):
            return
        state = self.cell.read()
        when = (
            datetime.fromtimestamp(
                state.previous_timestamp / 1000, ZoneInfo(self.settings.timezone)
            ).strftime("%Y-%m-%d %H:%M:%S %Z")
            if state.previous_timestamp is not None
            else "never"
        )
        who = f"<@{state.previous_user}>" if state.previous_user else "nobody"
        await ctx.send(
            f"`{state.previous_value}`; "
            f"{format_count(state.previous_value or 0, self.settings.radix)}, "
            f"counted by {who} at {when}.",
            ephemeral=True,
        )

    @module_group_sequence.subcommand(
        "reset", sub_cmd_description="Reset the previous value"
    )
    @interactions.slash_option(
        name="value",
        description="The value to set to",
        opt_type=interactions.OptionType.INTEGER,
        required=False,
    )
    @error_handler
    async def reset_sequence(self, ctx: interactions.SlashContext, value: int = 0) -> None:
        if not await self.ensure_ready(ctx):
            return
        with self.guard.hold() as acquired:
            if not acquired:
                return await self.send_error(
                    ctx, "A submission is being processed, try again later."
                )
            await self.cell.update(
                previous_value=value,
                previous_user=None,
                previous_timestamp=int(time.time() * 1000),
            )
        logger.info(f"Sequence reset to {value} by {ctx.author.id}")
        await ctx.send(format_count(value, self.settings.radix))

    # Role commands

    @module_group_role.subcommand(
        "list-categories", sub_cmd_description="List existing role categories"
    )
    @error_handler
    async def list_categories(self, ctx: interactions.SlashContext) -> None:
        if not await self.ensure_ready(ctx):
            return
        await ctx.send(f"Existing categories: {', '.join(self.catalog.categories())}.")

    @module_group_role.subcommand(
        "order-categories", sub_cmd_description="Order existing role categories"
    )
    @interactions.slash_option(
        name="categories",
        description="Comma separated list of categories",
        opt_type=interactions.OptionType.STRING,
        required=True,
    )
    @error_handler
    async def order_categories(
        self, ctx: interactions.SlashContext, categories: str
    ) -> None:
        if not await self.ensure_ready(ctx):
            return
        names = [name for name in re.split(r",\s*", categories.strip()) if name]
        diff = diff_order(self.catalog.categories(), names)

        if await self.catalog.order_categories(names) is CatalogResult.SUCCESS:
            return await self.send_success(ctx, "Ordered categories.")

        if diff.missing:
            message = f"The following categories are not included: {', '.join(diff.missing)}."
        elif diff.unknown:
            message = f"The following categories do not exist: {', '.join(diff.unknown)}."
        else:
            message = f"Duplicated categories: {', '.join(diff.duplicated)}."
        await self.send_error(ctx, message)

    @module_group_role.subcommand(
        "register-category",
        sub_cmd_description="Register a role category",
    )
    @interactions.slash_option(
        name="category",
        description="The category of the role",
        opt_type=interactions.OptionType.STRING,
        required=True,
    )
    @error_handler
    async def register_category(
        self, ctx: interactions.SlashContext, category: str
    ) -> None:
        if not await self.ensure_ready(ctx):
            return
        match await self.catalog.register_category(category):
            case CatalogResult.SUCCESS:
                await self.send_success(
                    ctx, f"The category `{category}` has been registered."
                )
            case CatalogResult.INVALID_NAME:
                await self.send_error(
                    ctx, "Category names can only contain 1-32 alphanumeric characters."
                )
            case CatalogResult.CATEGORY_LIMIT_EXCEEDED:
                await self.send_error(
                    ctx,
                    f"At most {self.config.MAX_CATEGORIES} categories can be registered.",
                )
            case _:
                await self.send_error(ctx, f"The category `{category}` already exists.")

    @module_group_role.subcommand(
        "register-role", sub_cmd_description="Register a role under a category"
    )
    @interactions.slash_option(
        name="category",
        description="The category of the role",
        opt_type=interactions.OptionType.STRING,
        required=True,
        autocomplete=True,
    )
    @interactions.slash_option(
        name="role",
        description="The role to register",
        opt_type=interactions.OptionType.ROLE,
        required=True,
    )
    @error_handler
    async def register_role(
        self, ctx: interactions.SlashContext, category: str, role: interactions.Role
    ) -> None:
        if not await self.ensure_ready(ctx):
            return
        match await self.catalog.register_role(category, int(role.id)):
            case CatalogResult.SUCCESS:
                await self.send_success(
                    ctx,
                    f"The role {role.mention} has been registered under the category `{category}`.",
                )
            case CatalogResult.UNKNOWN_CATEGORY:
                await self.send_error(ctx, f"Unknown category `{category}`.")
            case CatalogResult.ROLE_LIMIT_EXCEEDED:
                await self.send_error(
                    ctx,
                    f"No more than {self.config.MAX_ROLES_PER_CATEGORY} roles can be registered under a single category.",
                )
            case _:
                await self.send_error(
                    ctx,
                    f"The role {role.mention} has already been registered under the category `{category}`.",
                )

    @register_role.autocomplete("category")
    async def autocomplete_category(
        self, ctx: interactions.AutocompleteContext
    ) -> None:
        user_input: str = ctx.input_text.lower()
        categories = self.catalog.categories() if self.catalog else ()
        choices = (
            interactions.SlashCommandChoice(name=category, value=category)
            for category in categories
            if user_input in category.lower()
        )
        await ctx.send(tuple(itertools.islice(choices, 25)))

    @module_group_role.subcommand(
        "send-prompt",
        sub_cmd_description="Send the role prompt to the current channel",
    )
    @interactions.slash_option(
        name="content",
        description="The text content of the prompt",
        opt_type=interactions.OptionType.STRING,
        required=True,
    )
    @error_handler
    async def send_prompt(self, ctx: interactions.SlashContext, content: str) -> None:
        await ctx.channel.send(
            embeds=[await self.create_embed("Role Selection", content, EmbedColor.OFF)],
            components=[
                interactions.Button(
                    style=interactions.ButtonStyle.PRIMARY,
                    label="Select Roles",
                    custom_id=self.SELECT_ROLES_BUTTON,
                )
            ],
            allowed_mentions=interactions.AllowedMentions(parse=[]),
        )
        await ctx.send("sent", ephemeral=True)

    # Role selection

    @interactions.component_callback(SELECT_ROLES_BUTTON)
    @error_handler
    async def on_select_roles(self, ctx: interactions.ComponentContext) -> None:
        if not await self.ensure_ready(ctx):
            return
        await ctx.defer(ephemeral=True)
        view = RoleDialogView(self.bot, ctx, self.guild, self.config)
        dialog = RoleDialog(int(ctx.author.id), self.catalog, view, self.config)
        await dialog.run()


def main() -> None:
    try:
        settings = Settings.load(CONFIG_PATH)
    except ConfigInvalid as e:
        logger.critical(f"Startup failed: {e}")
        raise SystemExit(1) from e

    bot = interactions.Client(
        token=settings.token,
        intents=interactions.Intents.DEFAULT | interactions.Intents.MESSAGE_CONTENT,
    )
    Counting(bot, settings=settings)
    bot.start()


if __name__ == "__main__":
    main()
