"""
统一混合调度器
在 Claude 与 Gemini 账户池之间按优先级 + LRU 选择上游账户，支持：
- 会话粘性（命中且账户仍可用时直接复用）
- 分组绑定（API Key 的 claudeAccountId / geminiAccountId 形如 group:<id>）
- 限流 / 过载 / 并发上限过滤
"""
from typing import Any, Dict, Iterable, List, Optional

from gemini_relay.utils.exceptions import NoAvailableAccountsError
from gemini_relay.utils.logger import setup_logger
from .account_types import (
    AccountCandidate,
    AccountKind,
    AccountSelection,
    CLAUDE_KINDS,
    GEMINI_KINDS,
)
from .repositories import AccountRepository, GroupRepository
from .session_store import SessionAffinityStore

GROUP_PREFIX = "group:"
BLOCKING_STATUSES = frozenset({"error", "blocked", "temp_error"})

PLATFORM_CLAUDE = "claude"
PLATFORM_GEMINI = "gemini"


def is_schedulable(value: Any) -> bool:
    """三态：缺失/True 可调度，False 或字符串 "false" 不可调度"""
    if value is None:
        return True
    return value is not False and value != "false"


def is_active(value: Any) -> bool:
    return value is True or value == "true"


def is_shared(account: Dict[str, Any]) -> bool:
    return account.get("accountType") in (None, "", "shared")


def normalize_model(model: str) -> str:
    return model.replace("models/", "", 1) if model.startswith("models/") else model


def supports_model(account: Dict[str, Any], requested_model: Optional[str]) -> bool:
    supported = account.get("supportedModels")
    if not requested_model or not isinstance(supported, list) or not supported:
        return True
    target = normalize_model(requested_model)
    return any(normalize_model(str(m)) == target for m in supported)


def extract_group_id(binding: Optional[str]) -> Optional[str]:
    if binding and binding.startswith(GROUP_PREFIX):
        return binding[len(GROUP_PREFIX):] or None
    return None


class UnifiedScheduler:
    """账户调度器

    Args:
        repositories: 每种账户类型的仓库；缺失的类型不参与调度
        session_store: 会话粘性映射
        group_repository: 分组查询
        rate_limit_duration_minutes: mark_rate_limited 的退避时长
    """

    def __init__(
        self,
        repositories: Dict[AccountKind, AccountRepository],
        session_store: SessionAffinityStore,
        group_repository: Optional[GroupRepository] = None,
        rate_limit_duration_minutes: int = 60,
    ):
        self.repositories = repositories
        self.session_store = session_store
        self.group_repository = group_repository
        self.rate_limit_duration_minutes = rate_limit_duration_minutes
        self.logger = setup_logger("scheduler")

    def repository_for(self, kind: AccountKind) -> Optional[AccountRepository]:
        return self.repositories.get(kind)

    # ------------------------------------------------------------------
    # 选择
    # ------------------------------------------------------------------

    async def select_account(
        self,
        api_key: Dict[str, Any],
        session_hash: Optional[str] = None,
        requested_model: Optional[str] = None,
        allow_api_accounts: bool = True,
    ) -> AccountSelection:
        """为一次请求选择账户

        Raises:
            NoAvailableAccountsError: 过滤后没有任何候选
        """
        key_name = api_key.get("name") or api_key.get("id") or "unknown"
        claude_group_id = extract_group_id(api_key.get("claudeAccountId"))
        gemini_group_id = extract_group_id(api_key.get("geminiAccountId"))
        group_bound = bool(claude_group_id or gemini_group_id)

        if group_bound:
            self.logger.info(
                f"API key {key_name} bound to group(s): "
                f"Claude={claude_group_id or 'none'}, Gemini={gemini_group_id or 'none'}"
            )

        # 1. 会话粘性
        if session_hash:
            mapped = await self.session_store.get(session_hash)
            if mapped:
                valid = mapped.kind in self._allowed_kinds(allow_api_accounts)
                if valid and group_bound:
                    valid = await self._in_groups(mapped.account_id, claude_group_id, gemini_group_id)
                if valid:
                    valid = await self.is_available(mapped.account_id, mapped.kind, requested_model)
                if valid:
                    await self.session_store.extend(session_hash)
                    await self._mark_used(mapped)
                    self.logger.info(
                        f"Using sticky session account: {mapped.account_id} ({mapped.kind.value}) "
                        f"for session {session_hash}"
                    )
                    return mapped
                self.logger.warning(
                    f"Mapped account {mapped.account_id} ({mapped.kind.value}) is no longer available, "
                    f"selecting new account"
                )
                await self.session_store.delete(session_hash)

        # 2. 候选
        if group_bound:
            candidates = await self._collect_group_candidates(
                claude_group_id, gemini_group_id, requested_model, allow_api_accounts
            )
        else:
            candidates = await self._collect_shared_candidates(requested_model, allow_api_accounts)

        if not candidates:
            scope = "group(s)" if group_bound else "shared pool"
            raise NoAvailableAccountsError(f"No available accounts in {scope}")

        # 3. 优先级升序，同优先级最久未使用优先（sorted 稳定）
        selected = sorted(candidates, key=AccountCandidate.sort_key)[0]
        selection = AccountSelection(account_id=selected.account_id, kind=selected.kind)

        if session_hash:
            await self.session_store.set(session_hash, selection)
            self.logger.info(
                f"Created sticky session mapping: {selected.name or selected.account_id} "
                f"({selected.kind.value}) for session {session_hash}"
            )

        self.logger.info(
            f"Selected account: {selected.name or selected.account_id} ({selected.kind.value}) "
            f"with priority {selected.priority} for API key {key_name}"
        )
        await self._mark_used(selection)
        return selection

    def _allowed_kinds(self, allow_api_accounts: bool) -> List[AccountKind]:
        kinds = list(GEMINI_KINDS) + list(CLAUDE_KINDS)
        if not allow_api_accounts:
            kinds.remove(AccountKind.GEMINI_API)
        return [kind for kind in kinds if kind in self.repositories]

    async def _collect_shared_candidates(
        self, requested_model: Optional[str], allow_api_accounts: bool
    ) -> List[AccountCandidate]:
        candidates: List[AccountCandidate] = []
        for kind in self._allowed_kinds(allow_api_accounts):
            repository = self.repositories[kind]
            for account in await repository.get_all_accounts():
                if await self._check_account(account, kind, requested_model):
                    candidates.append(AccountCandidate.from_record(account, kind))

        self.logger.info(f"Total available accounts: {len(candidates)}")
        return candidates

    async def _collect_group_candidates(
        self,
        claude_group_id: Optional[str],
        gemini_group_id: Optional[str],
        requested_model: Optional[str],
        allow_api_accounts: bool,
    ) -> List[AccountCandidate]:
        candidates: List[AccountCandidate] = []
        for group_id, platform in ((claude_group_id, PLATFORM_CLAUDE), (gemini_group_id, PLATFORM_GEMINI)):
            if not group_id or self.group_repository is None:
                continue
            group = await self.group_repository.get_group(group_id)
            if not group:
                self.logger.warning(f"Account group not found: {group_id}")
                continue
            self.logger.info(f"Loading {platform} group: {group.get('name') or group_id}")

            for member_id in await self.group_repository.get_group_members(group_id):
                resolved = await self._resolve_group_member(member_id, platform, allow_api_accounts)
                if resolved is None:
                    continue
                account, kind = resolved
                if await self._check_account(account, kind, requested_model):
                    candidates.append(AccountCandidate.from_record(account, kind))

        self.logger.info(f"Group accounts available: {len(candidates)}")
        return candidates

    async def _resolve_group_member(self, member_id: str, platform: str, allow_api_accounts: bool):
        """按平台依次尝试各账户类型，返回 (记录, 类型)"""
        if platform == PLATFORM_CLAUDE:
            kinds: Iterable[AccountKind] = CLAUDE_KINDS
        else:
            kinds = GEMINI_KINDS if allow_api_accounts else (AccountKind.GEMINI,)

        for kind in kinds:
            repository = self.repositories.get(kind)
            if repository is None:
                continue
            account = await repository.get_account(member_id)
            if account:
                return account, kind
        return None

    async def _in_groups(
        self, account_id: str, claude_group_id: Optional[str], gemini_group_id: Optional[str]
    ) -> bool:
        if self.group_repository is None:
            return False
        for group_id in (claude_group_id, gemini_group_id):
            if group_id and account_id in await self.group_repository.get_group_members(group_id):
                return True
        return False

    # ------------------------------------------------------------------
    # 可用性判断
    # ------------------------------------------------------------------

    async def is_available(
        self, account_id: str, kind: AccountKind, requested_model: Optional[str] = None
    ) -> bool:
        """对单个账户重新执行候选过滤条件"""
        repository = self.repositories.get(kind)
        if repository is None:
            return False
        account = await repository.get_account(account_id)
        return await self._check_account(account, kind, requested_model)

    async def _check_account(
        self, account: Optional[Dict[str, Any]], kind: AccountKind, requested_model: Optional[str]
    ) -> bool:
        if not account or not is_schedulable(account.get("schedulable")):
            return False
        if not is_active(account.get("isActive")):
            return False

        repository = self.repositories[kind]
        account_id = str(account.get("id", ""))
        status = account.get("status")

        if kind == AccountKind.CLAUDE_OFFICIAL:
            if status in BLOCKING_STATUSES or not is_shared(account):
                return False
            if await repository.is_rate_limited(account_id):
                self.logger.debug(f"Official account {account_id} is rate limited")
                return False
            if await repository.is_overloaded(account_id):
                self.logger.debug(f"Official account {account_id} is overloaded")
                return False

        elif kind in (AccountKind.CLAUDE_CONSOLE, AccountKind.CCR):
            if status != "active" or account.get("accountType") != "shared":
                return False
            if repository.is_subscription_expired(account):
                self.logger.debug(f"{kind.value} account {account_id} subscription expired")
                return False
            if await repository.is_rate_limited(account_id) or repository.is_quota_exceeded(account):
                self.logger.debug(f"{kind.value} account {account_id} rate limited or quota exceeded")
                return False
            if kind == AccountKind.CLAUDE_CONSOLE:
                try:
                    max_concurrent = int(account.get("maxConcurrentTasks") or 0)
                except (TypeError, ValueError):
                    max_concurrent = 0
                if max_concurrent > 0:
                    current = await repository.get_concurrency(account_id)
                    if current >= max_concurrent:
                        self.logger.debug(
                            f"Console account {account_id} at concurrency limit: {current}/{max_concurrent}"
                        )
                        return False

        elif kind == AccountKind.BEDROCK:
            if account.get("accountType") != "shared":
                return False

        else:
            if status in BLOCKING_STATUSES or not is_shared(account):
                return False
            if kind == AccountKind.GEMINI and repository.is_token_expired(account) and not account.get("refreshToken"):
                self.logger.debug(f"Gemini account {account_id} token expired without refresh token")
                return False
            if await repository.is_rate_limited(account_id):
                self.logger.debug(f"{kind.value} account {account_id} is rate limited")
                return False

        return supports_model(account, requested_model)

    # ------------------------------------------------------------------
    # 状态变更
    # ------------------------------------------------------------------

    async def _mark_used(self, selection: AccountSelection) -> None:
        repository = self.repositories.get(selection.kind)
        if repository is not None:
            await repository.mark_used(selection.account_id)

    async def mark_rate_limited(
        self, account_id: str, kind: AccountKind, session_hash: Optional[str] = None
    ) -> None:
        """标记限流并删除会话映射，下次请求重新选择账户"""
        repository = self.repositories.get(kind)
        if repository is not None:
            await repository.mark_rate_limited(account_id, self.rate_limit_duration_minutes)
        if session_hash:
            await self.session_store.delete(session_hash)
        self.logger.info(f"Marked account as rate limited: {account_id} ({kind.value})")

    async def clear_rate_limit(self, account_id: str, kind: AccountKind) -> None:
        repository = self.repositories.get(kind)
        if repository is not None:
            await repository.remove_rate_limit(account_id)
        self.logger.info(f"Removed rate limit for account: {account_id} ({kind.value})")

    async def clear_session(self, session_hash: str) -> None:
        await self.session_store.delete(session_hash)
