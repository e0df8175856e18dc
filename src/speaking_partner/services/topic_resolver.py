"""Topic catalog and per-user language resolution."""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml
from pydantic import ValidationError

from ..config import settings
from ..models.schemas import LanguagePair, ResolvedTopic, TopicInfo

logger = logging.getLogger(__name__)


class UnknownTopicError(Exception):
    """Raised when a topic id is not in the catalog or is inactive."""
    pass


class TopicCatalogError(Exception):
    """Raised when a topic catalog file cannot be loaded."""
    pass


DEFAULT_TOPICS: List[TopicInfo] = [
    TopicInfo(
        topic_id="1",
        name="Daily Conversations",
        description="Practice everyday conversations about daily routines, weather, and common situations.",
        category="General",
        difficulty="beginner",
        sample_questions=[
            "How was your day?",
            "What did you have for breakfast?",
            "What are your plans for the weekend?",
        ],
    ),
    TopicInfo(
        topic_id="2",
        name="Business English",
        description="Professional English for meetings, presentations, and workplace communication.",
        category="Professional",
        difficulty="advanced",
        target_language="English",
        sample_questions=[
            "Can you tell me about your work experience?",
            "What challenges have you faced in your career?",
            "How do you handle difficult clients?",
        ],
    ),
    TopicInfo(
        topic_id="3",
        name="Travel and Tourism",
        description="Booking hotels, asking directions, and exploring new places.",
        category="Travel",
        difficulty="intermediate",
        sample_questions=[
            "Have you traveled abroad?",
            "What is your favorite destination?",
            "How do you plan your trips?",
        ],
    ),
    TopicInfo(
        topic_id="4",
        name="Academic Discussions",
        description="Discussing research, giving opinions, and debating topics.",
        category="Academic",
        difficulty="advanced",
        sample_questions=[
            "What do you think about climate change?",
            "Can you summarize a recent article you read?",
            "What is your opinion on online education?",
        ],
    ),
    TopicInfo(
        topic_id="5",
        name="Food and Cooking",
        description="Talk about cuisines, recipes, restaurants, and food culture.",
        category="Lifestyle",
        difficulty="beginner",
        sample_questions=[
            "What is your favorite food?",
            "Can you cook?",
            "Have you tried any exotic cuisines?",
        ],
    ),
    TopicInfo(
        topic_id="6",
        name="Movies and Entertainment",
        description="Discuss films, TV shows, music, and pop culture.",
        category="Entertainment",
        difficulty="intermediate",
        sample_questions=[
            "What is the last movie you watched?",
            "Who is your favorite actor?",
            "Do you prefer movies or TV series?",
        ],
    ),
    TopicInfo(
        topic_id="7",
        name="Health and Fitness",
        description="Conversations about exercise, healthy lifestyle, and wellness.",
        category="Health",
        difficulty="intermediate",
        sample_questions=[
            "Do you exercise regularly?",
            "What do you do to stay healthy?",
            "Have you tried any sports?",
        ],
    ),
    TopicInfo(
        topic_id="8",
        name="Technology",
        description="Discuss gadgets, apps, social media, and tech trends.",
        category="Technology",
        difficulty="intermediate",
        sample_questions=[
            "What smartphone do you use?",
            "How has technology changed your life?",
            "What do you think about AI?",
        ],
    ),
]


LANGUAGE_CODES: Dict[str, str] = {
    "English": "en-US",
    "Spanish": "es-ES",
    "French": "fr-FR",
    "German": "de-DE",
    "Italian": "it-IT",
    "Portuguese": "pt-PT",
    "Russian": "ru-RU",
    "Chinese": "zh-CN",
    "Japanese": "ja-JP",
    "Korean": "ko-KR",
    "Turkish": "tr-TR",
    "Arabic": "ar-SA",
    "Dutch": "nl-NL",
    "Polish": "pl-PL",
    "Swedish": "sv-SE",
    "Norwegian": "no-NO",
    "Danish": "da-DK",
    "Finnish": "fi-FI",
    "Czech": "cs-CZ",
    "Hungarian": "hu-HU",
    "Romanian": "ro-RO",
    "Greek": "el-GR",
    "Hindi": "hi-IN",
    "Thai": "th-TH",
    "Vietnamese": "vi-VN",
    "Indonesian": "id-ID",
    "Malay": "ms-MY",
    "Filipino": "fil-PH",
}

INITIAL_GREETINGS: Dict[str, str] = {
    "English": "Hello! I'm your AI speaking partner. We'll be practicing \"{topic}\" today. Let's have a great conversation! How are you doing?",
    "Spanish": "¡Hola! Soy tu compañero de conversación de IA. Hoy practicaremos \"{topic}\". ¡Tengamos una gran conversación! ¿Cómo estás?",
    "French": "Bonjour! Je suis ton partenaire de conversation IA. Nous allons pratiquer \"{topic}\" aujourd'hui. Ayons une excellente conversation! Comment allez-vous?",
    "German": "Hallo! Ich bin dein KI-Gesprächspartner. Wir werden heute \"{topic}\" üben. Lass uns ein großartiges Gespräch führen! Wie geht es dir?",
    "Italian": "Ciao! Sono il tuo partner di conversazione IA. Oggi praticheremo \"{topic}\". Facciamo una bella conversazione! Come stai?",
    "Portuguese": "Olá! Sou seu parceiro de conversação IA. Vamos praticar \"{topic}\" hoje. Vamos ter uma ótima conversa! Como você está?",
    "Turkish": "Merhaba! Ben senin AI konuşma partnerinim. Bugün \"{topic}\" pratiği yapacağız. Harika bir sohbet edelim! Nasılsın?",
}


def language_code(language: str) -> str:
    """BCP-47 tag for a language name; unknown languages map to en-US."""
    return LANGUAGE_CODES.get(language, "en-US")


def initial_greeting(language: str, topic_name: str) -> str:
    template = INITIAL_GREETINGS.get(language, INITIAL_GREETINGS["English"])
    return template.format(topic=topic_name)


class TopicResolver:
    """
    Resolves a topic id and user id into topic info, language pair and level.

    Users without stored preferences get the configured defaults. A topic that
    pins a target language overrides the user's target language.
    """

    def __init__(
        self,
        topics: Optional[Iterable[TopicInfo]] = None,
        user_languages: Optional[Dict[str, Dict[str, str]]] = None,
    ):
        self._topics: Dict[str, TopicInfo] = {
            t.topic_id: t for t in (DEFAULT_TOPICS if topics is None else topics)
        }
        self._user_languages = dict(user_languages or {})

    @classmethod
    def from_yaml(cls, path: str) -> "TopicResolver":
        """
        Load a catalog of the form:

            topics:
              - topic_id: travel
                name: Travel
                target_language: Spanish
            users:
              alice: {target_language: French, native_language: English, proficiency_level: beginner}

        Raises:
            TopicCatalogError: If the file is missing or malformed
        """
        yaml_path = Path(path)
        try:
            with open(yaml_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise TopicCatalogError(f"Topic catalog not found: {yaml_path}")
        except yaml.YAMLError as e:
            raise TopicCatalogError(f"Invalid YAML in {yaml_path}: {e}")

        if not isinstance(data, dict):
            raise TopicCatalogError(f"Topic catalog {yaml_path} must be a mapping, got {type(data).__name__}")
        if not isinstance(data.get("users") or {}, dict):
            raise TopicCatalogError(f"'users' in {yaml_path} must be a mapping")

        try:
            topics = [TopicInfo(**entry) for entry in data.get("topics") or []]
        except (TypeError, ValidationError) as e:
            raise TopicCatalogError(f"Invalid topic entry in {yaml_path}: {e}")

        users = {str(k): v or {} for k, v in (data.get("users") or {}).items()}
        logger.info(f"Loaded {len(topics)} topics and {len(users)} user profiles from {yaml_path}")
        return cls(topics=topics or None, user_languages=users)

    @classmethod
    def from_settings(cls) -> "TopicResolver":
        if settings.topics_file:
            return cls.from_yaml(settings.topics_file)
        return cls()

    def list_topics(self) -> List[TopicInfo]:
        return [t for t in self._topics.values() if t.is_active]

    def get_topic(self, topic_id: str) -> TopicInfo:
        topic = self._topics.get(str(topic_id))
        if topic is None or not topic.is_active:
            raise UnknownTopicError(f"Topic {topic_id} not found")
        return topic

    def set_user_languages(self, user_id: str, **prefs: str) -> None:
        self._user_languages.setdefault(user_id, {}).update(prefs)

    def resolve(self, topic_id: str, user_id: str) -> ResolvedTopic:
        topic = self.get_topic(topic_id)
        prefs = self._user_languages.get(user_id, {})

        target = topic.target_language or prefs.get("target_language") or settings.default_target_language
        native = prefs.get("native_language") or settings.default_native_language
        level = prefs.get("proficiency_level") or settings.default_proficiency_level

        return ResolvedTopic(
            topic=topic,
            language=LanguagePair(
                target_language=target,
                native_language=native,
                language_code=language_code(target),
            ),
            proficiency_level=level,
        )
