"""Vocabulary tables used by the local heuristic extractor.

The tables are plain immutable data. ``LocalHeuristicExtractor`` compiles its
regular expressions from whichever ``PatternTables`` it is given, so tests can
pass a reduced table built with ``dataclasses.replace``.
"""

from dataclasses import dataclass
from functools import lru_cache

# CJK Unified Ideographs
CJK_RANGE = "\u4e00-\u9fff"

COMMON_SURNAMES = (
    "王 李 張 劉 陳 楊 黃 趙 吳 周 徐 孫 馬 朱 胡 郭 何 高 林 鄭 謝 羅 梁 宋 唐 許 韓 馮 "
    "鄧 曹 彭 曾 蕭 田 董 袁 潘 於 蔣 蔡 余 杜 葉 程 蘇 魏 呂 丁 任 沈 姚 盧 傅 鍾 姜 崔 "
    "譚 廖 范 汪 陸 金 石 戴 賈 韋 夏 付 方 鄒 熊 白 孟 秦 邱 江 尹 薛 閆 段 雷 侯 龍 史 "
    "陶 黎 賀 顧 毛 郝 龔 邵 萬 錢 嚴 覃 武 戚 莫 孔 向 湯 柯 洪 游 詹 賴 簡 歐陽 司馬 諸葛"
).split()

NON_NAME_WORDS = (
    # Street and place words
    "road", "street", "avenue", "drive", "lane", "place", "rd", "st", "ave", "dr",
    "ln", "pl", "district", "dist", "city", "county", "building", "floor", "room",
    "suite", "unit", "no", "xinyi", "taipei",
    # Corporate words
    "company", "corporation", "corp", "inc", "ltd", "limited", "llc", "co", "group",
    "technology", "technologies",
    # Contact labels
    "phone", "mobile", "tel", "fax", "email", "address", "website",
    # Job words
    "senior", "junior", "lead", "chief", "software", "hardware", "engineer",
    "manager", "director", "president", "consultant", "analyst", "designer",
    "executive", "officer", "developer", "sales", "marketing",
)

CJK_COMPANY_SUFFIXES = (
    "股份有限公司", "有限公司", "企業社", "企業", "集團", "科技", "公司", "工作室", "事務所",
)

# Regex fragments
LATIN_COMPANY_SUFFIXES = (
    r"Inc\.?", "LLC", r"Ltd\.?", "Limited", "Corporation", r"Corp\.?", "Company", r"Co\.",
)

CJK_JOB_TITLES = (
    "經理", "總監", "主管", "專員", "工程師", "設計師", "顧問", "分析師", "總裁", "執行長",
    "董事", "秘書", "助理", "主任", "組長", "課長", "襄理", "協理", "處長", "部長", "店長",
)

LATIN_SENIORITY = (
    "Senior", "Junior", "Lead", "Chief", "Vice", "Assistant", "Associate", "Principal", "Head",
)

LATIN_DISCIPLINES = (
    "Software", "Hardware", "System", "Systems", "Sales", "Marketing", "Product",
    "Project", "General", "Technical", "Account",
)

LATIN_JOB_TITLES = (
    "Manager", "Director", "CEO", "CTO", "CFO", "COO", "Engineer", "Designer",
    "Consultant", "Analyst", "Executive", "President", "Supervisor", "Officer",
    "Developer", "Architect",
)

PHONE_LABELS = ("Tel", "Phone", "TEL", "T", "電話")
MOBILE_LABELS = ("Mobile", "Mob", "Cell", "M", "手機", "行動")
FAX_LABELS = ("Fax", "FAX", "傳真")
ADDRESS_LABELS = ("地址", "Address", "Addr", "Add")

CJK_ADDRESS_UNITS = ("路", "街", "巷", "弄", "號", "樓", "室", "段")
# Regex fragments
LATIN_ADDRESS_UNITS = (
    "Road", r"Rd\.?", "Street", r"St\.", "Avenue", r"Ave\.?", "Lane", r"Ln\.?",
    "Alley", r"No\.", "Floor", r"Fl\.", "Room", r"Rm\.", "Suite",
)

MIN_ADDRESS_LENGTH = 10


@dataclass(frozen=True)
class PatternTables:
    """Vocabulary the extractor builds its rules from."""

    surnames: tuple[str, ...] = tuple(COMMON_SURNAMES)
    non_name_words: tuple[str, ...] = NON_NAME_WORDS
    cjk_company_suffixes: tuple[str, ...] = CJK_COMPANY_SUFFIXES
    latin_company_suffixes: tuple[str, ...] = LATIN_COMPANY_SUFFIXES
    cjk_job_titles: tuple[str, ...] = CJK_JOB_TITLES
    latin_seniority: tuple[str, ...] = LATIN_SENIORITY
    latin_disciplines: tuple[str, ...] = LATIN_DISCIPLINES
    latin_job_titles: tuple[str, ...] = LATIN_JOB_TITLES
    phone_labels: tuple[str, ...] = PHONE_LABELS
    mobile_labels: tuple[str, ...] = MOBILE_LABELS
    fax_labels: tuple[str, ...] = FAX_LABELS
    address_labels: tuple[str, ...] = ADDRESS_LABELS
    cjk_address_units: tuple[str, ...] = CJK_ADDRESS_UNITS
    latin_address_units: tuple[str, ...] = LATIN_ADDRESS_UNITS
    min_address_length: int = MIN_ADDRESS_LENGTH


@lru_cache(maxsize=1)
def default_pattern_tables() -> PatternTables:
    """Shared default tables."""
    return PatternTables()
