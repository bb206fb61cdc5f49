from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# ============================================================================
# QUIZ CATALOG
# ============================================================================


class Question(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: Optional[str] = None
    questionText: str = Field(..., min_length=1)
    questionType: str = Field(..., min_length=1)
    options: List[Optional[str]]
    # A single value, an ordered list for multi-select, or None when any answer counts
    correctAnswer: Optional[Union[str, List[str]]] = None
    photoUrl: Optional[str] = None
    points: int = Field(1, ge=1)


class QuizCreate(BaseModel):
    title: str = Field(..., min_length=1)
    description: str
    timeLimit: int = Field(..., ge=0)
    questions: List[Question]


class Quiz(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    userId: str
    title: str
    description: str
    timeLimit: int
    questions: List[Question]
    createdAt: str
    updatedAt: str


# ============================================================================
# SESSIONS
# ============================================================================


class Answer(BaseModel):
    questionId: str
    answer: str


class Competitor(BaseModel):
    model_config = ConfigDict(extra="ignore")
    userId: str
    startedAt: str
    finished: bool = False
    answers: List[Answer] = []


class QuizSession(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    userId: str
    quizId: str
    code: str
    isActive: bool = True
    competitors: List[Competitor] = []
    createdAt: str
    updatedAt: str
    closedAt: Optional[str] = None


class SessionSummary(BaseModel):
    id: str
    quizId: str
    startedAt: str
    endedAt: Optional[str] = None
    amountOfParticipants: int


class JoinByCode(BaseModel):
    code: str = Field(..., pattern=r"^\d{6}$")


class AnswerEvent(BaseModel):
    """A single answer on its way into a competitor's answer list.

    Multi-select submissions arrive already comma-joined.
    """

    sessionId: str
    userId: str
    questionId: str
    answer: str
    questionText: Optional[str] = None


# ============================================================================
# RESULTS
# ============================================================================


class AnsweredQuestion(BaseModel):
    questionText: str
    answer: str


class CompetitorResult(BaseModel):
    name: str
    score: int
    userAnswers: List[AnsweredQuestion]


class OptionStat(BaseModel):
    optionText: str
    percentage: int
    isCorrect: bool


class QuestionStats(BaseModel):
    questionText: str
    options: List[OptionStat]


class SessionAnalytics(BaseModel):
    quizTitle: str
    quizDescription: str
    averageScore: int
    highestScore: int
    questions: List[QuestionStats]
