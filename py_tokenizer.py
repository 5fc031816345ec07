from dataclasses import dataclass
import functools
import typing as tp
from enum import Enum
import re

from py_util import *

@dataclass
class SourceLocation:
    filename:str
    line:int
    col:int

    @tp.override
    def __str__(self):
        return f"{self.filename}:{self.line+1}:{self.col+1}"

class ParseError(Exception):
    " malformed expression, `offset` is the absolute column of the offending input "
    def __init__(self,message:str,offset:int):
        super().__init__(message)
        self.message=message
        self.offset=offset

class TokenType(int,Enum):
    SQSTRING=1
    DQSTRING=2

    VERSION=3
    INTEGER=4
    FLOAT=5
    BOOLEAN=6

    VARREF=7
    " reference to a macro, either $(name), ${name} or a bare identifier "
    DEFINED=8
    " the whole defined(name) call, payload is the name "

    OPERATOR=9
    OPEN_PAREN=10
    CLOSE_PAREN=11

class Operator(str,Enum):
    EQUAL="=="
    UNEQUAL="!="
    LESS="<"
    LESS_OR_EQUAL="<="
    GREATER=">"
    GREATER_OR_EQUAL=">="

    LOGIC_AND="&&"
    LOGIC_AND_WORD="AND"
    LOGIC_OR="||"
    LOGIC_OR_WORD="OR"
    LOGIC_NOT="!"
    LOGIC_NOT_WORD="NOT"

    ADD="+"
    SUBTRACT="-"
    MULTIPLY="*"
    DIVIDE="/"
    MODULUS="%"

RELATIONAL_OPERATORS=frozenset((
    Operator.EQUAL,
    Operator.UNEQUAL,
    Operator.LESS,
    Operator.LESS_OR_EQUAL,
    Operator.GREATER,
    Operator.GREATER_OR_EQUAL,
))
ADDITIVE_OPERATORS=frozenset((Operator.ADD,Operator.SUBTRACT))
MULTIPLICATIVE_OPERATORS=frozenset((Operator.MULTIPLY,Operator.DIVIDE,Operator.MODULUS))
AND_OPERATORS=frozenset((Operator.LOGIC_AND,Operator.LOGIC_AND_WORD))
OR_OPERATORS=frozenset((Operator.LOGIC_OR,Operator.LOGIC_OR_WORD))
NOT_OPERATORS=frozenset((Operator.LOGIC_NOT,Operator.LOGIC_NOT_WORD))

COMPOUND_OPERATORS=[
    Operator.EQUAL,
    Operator.UNEQUAL,
    Operator.LESS_OR_EQUAL,
    Operator.GREATER_OR_EQUAL,
    Operator.LOGIC_AND,
    Operator.LOGIC_OR,
]
"two character operators, checked before the single character ones"
COMPOUND_OPERATORS_CHAR_AT_ZERO=set((o.value[0] for o in COMPOUND_OPERATORS))

SINGLE_CHAR_OPERATORS={o.value:o for o in (
    Operator.LESS,
    Operator.GREATER,
    Operator.LOGIC_NOT,
    Operator.ADD,
    Operator.SUBTRACT,
    Operator.MULTIPLY,
    Operator.DIVIDE,
    Operator.MODULUS,
)}

WORD_OPERATORS=[Operator.LOGIC_NOT_WORD,Operator.LOGIC_AND_WORD,Operator.LOGIC_OR_WORD]

NAME_PATTERN=r"[_A-Za-z][\w.]*"
_WORD_END=r"(?![\w.])"

WHITESPACE_RE=re.compile(r"\s+")
BOOLEAN_RE=re.compile(r"(?:true|false)"+_WORD_END,re.IGNORECASE)
VERSION_RE=re.compile(r"([0-9]+)\.([0-9]+)(?:\.([0-9]+))?((?:[-+_.][A-Za-z0-9_]+)*)")
FLOAT_RE=re.compile(r"[0-9]*\.?[0-9]+(?:[eE][-+]?[0-9]+)?")
INTEGER_RE=re.compile(r"[0-9]+")
DEFINED_RE=re.compile(r"defined\s*\(\s*("+NAME_PATTERN+r")\s*\)",re.IGNORECASE)
MACRO_REF_RE=re.compile(r"\$(?:\(("+NAME_PATTERN+r")\)|\{("+NAME_PATTERN+r")\})")
WORD_OPERATOR_RE={o:re.compile(o.value+_WORD_END,re.IGNORECASE) for o in WORD_OPERATORS}
IDENT_RE=re.compile(NAME_PATTERN)

@functools.total_ordering
@dataclass(frozen=True,eq=False)
class Version:
    """
    version literal like 1.2, 1.2.3 or 1.2.3-beta.1

    compares field by field. a missing patch sorts below any present patch, and a missing release suffix below any
    present one.
    """
    major:int
    minor:int
    patch:int|None=None
    release:str|None=None

    @staticmethod
    def match(s:str,pos:int=0)->"tuple[Version,int]|None":
        "parse a version at the start of s[pos:], returns the version and the length of the matched text"
        m=VERSION_RE.match(s,pos)
        if m is None:
            return None

        patch=int(m.group(3)) if m.group(3) is not None else None
        release=m.group(4) or None
        return Version(int(m.group(1)),int(m.group(2)),patch,release),m.end()-pos

    @staticmethod
    def parse(s:str)->"Version|None":
        "parse s as a whole, returns None if s is not exactly a version literal"
        res=Version.match(s)
        if res is None or res[1]!=len(s):
            return None
        return res[0]

    @property
    def sort_key(self)->tuple:
        return (
            self.major,
            self.minor,
            (0,0) if self.patch is None else (1,self.patch),
            (0,"") if self.release is None else (1,self.release),
        )

    def __eq__(self,other:object)->bool:
        if not isinstance(other,Version):
            return NotImplemented
        return self.sort_key==other.sort_key

    def __lt__(self,other:"Version")->bool:
        return self.sort_key<other.sort_key

    def __hash__(self)->int:
        return hash(self.sort_key)

    @tp.override
    def __str__(self):
        ret=f"{self.major}.{self.minor}"
        if self.patch is not None:
            ret+=f".{self.patch}"
        if self.release is not None:
            ret+=self.release
        return ret

@dataclass
class Token:
    s:str
    " raw text, the macro name for VARREF and DEFINED tokens "
    token_type:TokenType
    offset:int
    " absolute column of the token in the directive line "
    length:int
    op:Operator|None=None

    expanded_from_macros:list[str]|None=None

    def expand_from(self,macro_name:str):
        if self.expanded_from_macros is None:
            self.expanded_from_macros=[]

        self.expanded_from_macros.append(macro_name)

    def is_expanded_from(self,macro_name:str)->bool:
        if self.expanded_from_macros is None:
            return False

        return macro_name in self.expanded_from_macros

    def is_operator(self,ops:tp.Container[Operator])->bool:
        return self.token_type==TokenType.OPERATOR and self.op in ops

def print_tokens(tokens:list[Token],log:Log):
    " trace tokens, one per line (super verbose mode only) "
    for token in tokens:
        log.trace(f"token: {token.token_type.name}, pos={token.offset}, len={token.length}, value=\"{token.s}\"")

class Tokenizer:
    " utility class to convert an expression into tokens "

    def __init__(self,text:str,start_offset:int=0):
        self.text:str=text
        self.start_offset:int=start_offset
        self.index:int=0

        self.tokens:list[Token]=[]

    @property
    def c(self)->str:
        " return character at current pointer location "
        return self.c_fut(0)

    def c_fut(self,n:int)->str:
        " return character n positions in advance of current pointer, or empty string past the end "
        i=self.index+n
        if i>=len(self.text):
            return ""
        return self.text[i]

    @property
    def remaining(self)->bool:
        " return True if any characters are remaining in the text "
        return self.index<len(self.text)

    def add_tok(self,token_type:TokenType,length:int,s:str|None=None,op:Operator|None=None):
        " add token spanning `length` characters from the current pointer, and advance past it "
        if s is None:
            s=self.text[self.index:self.index+length]

        self.tokens.append(Token(s,token_type=token_type,offset=self.start_offset+self.index,length=length,op=op))
        self.index+=length

    def compound_operator_present(self)->Operator|None:
        if self.c not in COMPOUND_OPERATORS_CHAR_AT_ZERO:
            return None

        for operator in COMPOUND_OPERATORS:
            if self.text.startswith(operator.value,self.index):
                return operator

        return None

    def parse_quoted_literal(self,quote:str,token_type:TokenType):
        " string literal, runs up to and including the matching quote, or to the end of the text "
        length=1
        while self.index+length<len(self.text):
            length+=1
            if self.text[self.index+length-1]==quote:
                break

        self.add_tok(token_type,length)

    def parse_tokens(self)->list[Token]:
        self.tokens=[]

        while self.remaining:
            if (m:=WHITESPACE_RE.match(self.text,self.index)) is not None:
                # whitespace is not emitted
                self.index=m.end()
                continue

            if (m:=BOOLEAN_RE.match(self.text,self.index)) is not None:
                self.add_tok(TokenType.BOOLEAN,m.end()-self.index)
                continue

            version=Version.match(self.text,self.index)
            m=FLOAT_RE.match(self.text,self.index)
            # 1.5 is a version, 1.5e3 is not
            if version is not None and (m is None or version[1]>=m.end()-self.index):
                self.add_tok(TokenType.VERSION,version[1])
                continue

            if m is not None:
                # the float pattern also matches plain integers
                number=m.group()
                if "." in number or "e" in number or "E" in number:
                    self.add_tok(TokenType.FLOAT,len(number))
                else:
                    self.add_tok(TokenType.INTEGER,len(number))
                continue

            if (m:=INTEGER_RE.match(self.text,self.index)) is not None:
                self.add_tok(TokenType.INTEGER,m.end()-self.index)
                continue

            if (m:=DEFINED_RE.match(self.text,self.index)) is not None:
                self.add_tok(TokenType.DEFINED,m.end()-self.index,s=m.group(1))
                continue

            if (m:=MACRO_REF_RE.match(self.text,self.index)) is not None:
                self.add_tok(TokenType.VARREF,m.end()-self.index,s=m.group(1) or m.group(2))
                continue

            if (operator:=self.compound_operator_present()) is not None:
                self.add_tok(TokenType.OPERATOR,len(operator.value),op=operator)
                continue

            match self.c:
                case "(":
                    self.add_tok(TokenType.OPEN_PAREN,1)
                    continue
                case ")":
                    self.add_tok(TokenType.CLOSE_PAREN,1)
                    continue
                case "'":
                    self.parse_quoted_literal("'",TokenType.SQSTRING)
                    continue
                case '"':
                    self.parse_quoted_literal('"',TokenType.DQSTRING)
                    continue
                case c if c in SINGLE_CHAR_OPERATORS:
                    self.add_tok(TokenType.OPERATOR,1,op=SINGLE_CHAR_OPERATORS[c])
                    continue

            matched_word_operator=False
            for operator in WORD_OPERATORS:
                if (m:=WORD_OPERATOR_RE[operator].match(self.text,self.index)) is not None:
                    self.add_tok(TokenType.OPERATOR,m.end()-self.index,op=operator)
                    matched_word_operator=True
                    break

            if matched_word_operator:
                continue

            if (m:=IDENT_RE.match(self.text,self.index)) is not None:
                # bare identifier, same as $(name), to allow C style '#if FOO'
                self.add_tok(TokenType.VARREF,m.end()-self.index)
                continue

            raise ParseError("Unrecognized input",self.start_offset+self.index)

        return self.tokens

def tokenize(text:str,start_offset:int=0)->list[Token]:
    return Tokenizer(text,start_offset).parse_tokens()
