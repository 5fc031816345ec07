import math
import operator
import typing as tp
from enum import Enum

from py_util import *
from py_tokenizer import *
from py_macros import MacroTable

class ProcessAs(str,Enum):
    " how operands of relational operators are coerced "
    NUMERIC="NUMERIC"
    " all operands must be numbers (#ifnum) "
    FORCESTRING="FORCESTRING"
    " always compare as strings (#ifstr) "
    STRINGINSENSITIVE="STRINGINSENSITIVE"
    " compare as lowercased strings (#ifistr) "
    NORMAL="NORMAL"
    " integer, then float, then string comparison, whichever works first (#if) "

Number=int|float

class NotANumber(ValueError):
    " operand cannot be read as the number type being tried, the caller rewinds and tries the next coercion "

RELATIONS:dict[Operator,tp.Callable[[tp.Any,tp.Any],bool]]={
    Operator.EQUAL:operator.eq,
    Operator.UNEQUAL:operator.ne,
    Operator.LESS:operator.lt,
    Operator.LESS_OR_EQUAL:operator.le,
    Operator.GREATER:operator.gt,
    Operator.GREATER_OR_EQUAL:operator.ge,
}

def strip_quotes(value:str)->str:
    " strip one pair of matching leading and trailing quotes "
    if len(value)>=2 and value[0] in "'\"" and value[-1]==value[0]:
        return value[1:-1]
    return value

def to_number(number_type:type,s:str)->Number:
    try:
        return number_type(s)
    except ValueError:
        raise NotANumber(f"'{s}' is not a {number_type.__name__}")

def divide(a:Number,b:Number)->Number:
    " integer division truncates toward zero "
    if isinstance(a,int) and isinstance(b,int):
        q=abs(a)//abs(b)
        return q if (a<0)==(b<0) else -q
    return a/b

def modulus(a:Number,b:Number)->Number:
    " the remainder takes the sign of the dividend "
    if isinstance(a,int) and isinstance(b,int):
        return a-b*divide(a,b)
    if math.isinf(a):
        return math.nan
    return math.fmod(a,b)

class Evaluator:
    """
    recursive descent evaluator for #if expressions

    precedence, lowest first:
        or_term  := and_term ( (|| | OR) and_term )*
        and_term := rel_term ( (&& | AND) rel_term )*
        rel_term := arith relop arith | arith | string relop string | other_factor
        arith    := mul_term ( (+|-) mul_term )*
        mul_term := value ( (*|/|%) value )*

    the token list is walked with a cursor. macro references are expanded by splicing the tokens of the macro value
    into the list in place of the reference, then parsing continues at the same index.

    "eating" means the value of the current sub-expression is discarded (right hand side of a short circuited && or
    ||, or a condition inside a disabled block). it is still parsed to keep the cursor in sync, but numeric operands
    are not checked and macro references are not expanded.
    """

    def __init__(self,macros:MacroTable,ignore_undefined:bool=False,log:Log|None=None):
        self.macros=macros
        self.ignore_undefined=ignore_undefined
        self.log=log

        self.tokens:Iter[Token]=Iter([])
        self.end_offset=0

        self.diagnostics:list[str]=[]
        " non fatal problems found during the last evaluation (division by zero) "

    def evaluate(self,expr:str,mode:ProcessAs=ProcessAs.NORMAL,start_offset:int=0,eating:bool=False)->bool:
        self.diagnostics=[]

        tokens=tokenize(expr,start_offset)
        if self.log is not None:
            print_tokens(tokens,self.log)

        self.tokens=Iter(tokens)
        self.end_offset=start_offset+len(expr.rstrip())

        if self.tokens.empty:
            raise ParseError("Expecting an expression",self.end_offset)

        ret=self.or_term(mode,eating)

        if self.tokens.remaining:
            raise ParseError("Not expecting anything more",self.tokens.item.offset)

        return ret

    def _next(self,expected:str)->Token:
        if self.tokens.empty:
            raise ParseError(f"Expecting {expected} before end of expression",self.end_offset)
        return self.tokens.next()

    def _diagnose(self,message:str,eating:bool):
        if not eating:
            self.diagnostics.append(message)

    def handle_varref(self,tok:Token,eating:bool):
        " replace the (just consumed) macro reference `tok` by the tokens of its value "
        if tok.is_expanded_from(tok.s):
            raise ParseError(f"Recursive reference to macro \"{tok.s}\"",tok.offset)

        value=self.macros.get(tok.s)
        if value is None:
            if not (self.ignore_undefined or eating):
                raise ParseError(f"Variable \"{tok.s}\" not defined!",tok.offset)
            # empty string literal, so that comparisons still parse
            value="''"

        new_tokens=tokenize(value,tok.offset)
        for new_tok in new_tokens:
            for macro_name in tok.expanded_from_macros or []:
                new_tok.expand_from(macro_name)
            new_tok.expand_from(tok.s)

        self.tokens.back()
        self.tokens.splice(self.tokens.index,new_tokens)

    def or_term(self,mode:ProcessAs,eating:bool=False)->bool:
        ret=self.and_term(mode,eating)
        while self.tokens.remaining:
            tok=self.tokens.next()
            if not tok.is_operator(OR_OPERATORS):
                # unknown operator, let the caller deal with it
                self.tokens.back()
                break

            if self.tokens.empty:
                raise ParseError(f"Expecting an expression after {tok.s}",self.end_offset)

            # short circuit: once true, the rest is only parsed
            if ret or eating:
                self.and_term(mode,True)
            else:
                ret=self.and_term(mode,False)

        return ret

    def and_term(self,mode:ProcessAs,eating:bool)->bool:
        ret=self.rel_term(mode,eating)
        while self.tokens.remaining:
            tok=self.tokens.next()
            if not tok.is_operator(AND_OPERATORS):
                self.tokens.back()
                break

            if self.tokens.empty:
                raise ParseError(f"Expecting an expression after {tok.s}",self.end_offset)

            # short circuit: once false, the rest is only parsed
            if not ret or eating:
                self.rel_term(mode,True)
            else:
                ret=self.rel_term(mode,False)

        return ret

    def rel_term(self,mode:ProcessAs,eating:bool)->bool:
        start_index=self.tokens.index

        if mode in (ProcessAs.NUMERIC,ProcessAs.NORMAL):
            for number_type in (int,float):
                self.tokens.index=start_index
                try:
                    return self.numeric_relation(number_type,eating)
                except NotANumber:
                    continue

        self.tokens.index=start_index
        try:
            left=self.string_factor(False,eating)
            if left is not None:
                if mode==ProcessAs.NUMERIC:
                    raise ParseError("#ifnum requires numeric values",self.tokens.previous.offset)

                if self.tokens.empty:
                    raise ParseError("Expecting a relational operator with a string",self.end_offset)

                tok=self.tokens.next()
                if not tok.is_operator(RELATIONAL_OPERATORS):
                    raise ParseError("Expecting a relational operator with a string",tok.offset)
                assert tok.op is not None

                right=self.string_factor(True,eating)
                if right is None:
                    raise ParseError(f"Expecting a string value after {tok.s}",self.tokens.item.offset if self.tokens.remaining else self.end_offset)

                return self.compare_strings(left,tok.op,right,mode)
        except NotANumber:
            # nested parentheses did not hold a string, other_factor has to deal with it
            pass

        self.tokens.index=start_index
        return self.other_factor(mode,eating)

    def compare_strings(self,left:str,op:Operator,right:str,mode:ProcessAs)->bool:
        left=strip_quotes(left)
        right=strip_quotes(right)

        if mode==ProcessAs.STRINGINSENSITIVE:
            return RELATIONS[op](left.lower(),right.lower())

        if mode==ProcessAs.NORMAL:
            left_version=Version.parse(left)
            right_version=Version.parse(right)
            if left_version is not None and right_version is not None:
                return RELATIONS[op](left_version,right_version)

        return RELATIONS[op](left,right)

    def numeric_relation(self,number_type:type,eating:bool)->bool:
        left=self.arith(number_type,eating)
        if self.tokens.remaining:
            tok=self.tokens.next()
            if tok.is_operator(RELATIONAL_OPERATORS):
                assert tok.op is not None
                right=self.arith(number_type,eating)
                return RELATIONS[tok.op](left,right)

            self.tokens.back()

        return left!=0

    def arith(self,number_type:type,eating:bool)->Number:
        ret=self.mul_term(number_type,eating)
        while self.tokens.remaining:
            tok=self.tokens.next()
            if not tok.is_operator(ADDITIVE_OPERATORS):
                self.tokens.back()
                break

            if self.tokens.empty:
                raise ParseError(f"Expecting an expression after {tok.s}",self.end_offset)

            right=self.mul_term(number_type,eating)
            if tok.op==Operator.ADD:
                ret+=right
            else:
                ret-=right

        return ret

    def mul_term(self,number_type:type,eating:bool)->Number:
        ret=self.value(number_type,eating)
        while self.tokens.remaining:
            tok=self.tokens.next()
            if not tok.is_operator(MULTIPLICATIVE_OPERATORS):
                self.tokens.back()
                break

            if self.tokens.empty:
                raise ParseError(f"Expecting an expression after {tok.s}",self.end_offset)

            right=self.value(number_type,eating)
            match tok.op:
                case Operator.MULTIPLY:
                    ret*=right
                case Operator.DIVIDE:
                    if right==0:
                        self._diagnose("Divide by zero!",eating)
                        ret=number_type(0)
                    else:
                        ret=divide(ret,right)
                case Operator.MODULUS:
                    if right==0:
                        self._diagnose("Modulus value of zero (equivalent to divide by zero)!",eating)
                        ret=number_type(0)
                    else:
                        ret=modulus(ret,right)

        return ret

    def value(self,number_type:type,eating:bool)->Number:
        tok=self._next("a value")

        sign=1
        if tok.token_type==TokenType.OPERATOR:
            match tok.op:
                case Operator.ADD:
                    sign=1
                case Operator.SUBTRACT:
                    sign=-1
                case _:
                    raise NotANumber("Expecting only + or - here")

            tok=self._next("a number after the sign")

        if eating:
            # only the syntax matters, not whether the numbers are any good
            if tok.token_type==TokenType.OPEN_PAREN:
                return sign*self.parenthesized(number_type,eating)
            return number_type(0)

        match tok.token_type:
            case TokenType.SQSTRING|TokenType.DQSTRING:
                return sign*to_number(number_type,strip_quotes(tok.s))
            case TokenType.VERSION|TokenType.INTEGER|TokenType.FLOAT:
                return sign*to_number(number_type,tok.s)
            case TokenType.BOOLEAN:
                return sign*number_type(1 if tok.s.lower()=="true" else 0)
            case TokenType.VARREF:
                self.handle_varref(tok,eating)
                return sign*self.value(number_type,eating)
            case TokenType.OPEN_PAREN:
                return sign*self.parenthesized(number_type,eating)
            case _:
                raise NotANumber(f"Not a {number_type.__name__}")

    def parenthesized(self,number_type:type,eating:bool)->Number:
        " rest of ( arith ), after the opening parenthesis "
        if self.tokens.empty:
            raise NotANumber("Expecting an expression after '('")

        ret=self.arith(number_type,eating)

        if self.tokens.empty:
            raise NotANumber("Expecting ')' before end of expression")
        if self.tokens.next().token_type!=TokenType.CLOSE_PAREN:
            raise NotANumber("Expecting ')' after expression")

        return ret

    def literal_text(self,tok:Token,eating:bool)->str:
        " macro references inside a literal are only expanded when the value is used "
        if eating:
            return tok.s
        return self.macros.substitute(tok.s)

    def string_factor(self,allow_numbers:bool,eating:bool)->str|None:
        tok=self._next("a value")

        match tok.token_type:
            case TokenType.SQSTRING|TokenType.DQSTRING|TokenType.VERSION:
                return self.literal_text(tok,eating)
            case TokenType.INTEGER|TokenType.FLOAT:
                # consumed either way
                if allow_numbers:
                    return self.literal_text(tok,eating)
                return None
            case TokenType.VARREF:
                self.handle_varref(tok,eating)
                return self.string_factor(allow_numbers,eating)
            case TokenType.OPEN_PAREN:
                if self.tokens.empty:
                    raise NotANumber("Expecting an expression after '('")

                ret=self.string_factor(allow_numbers,eating)

                if self.tokens.empty:
                    raise NotANumber("Expecting ')' before end of expression")
                if self.tokens.next().token_type!=TokenType.CLOSE_PAREN:
                    raise NotANumber("Expecting ')' after string")

                return ret
            case _:
                self.tokens.back()
                return None

    def other_factor(self,mode:ProcessAs,eating:bool)->bool:
        tok=self._next("an expression")

        match tok.token_type:
            case TokenType.BOOLEAN:
                return tok.s.lower()=="true"
            case TokenType.DEFINED:
                return tok.s in self.macros
            case TokenType.OPEN_PAREN:
                if self.tokens.empty:
                    raise ParseError("Expecting an expression after '('",self.end_offset)

                ret=self.or_term(mode,eating)

                if self.tokens.empty:
                    raise ParseError("Expecting ')' before end of expression",self.end_offset)
                close_tok=self.tokens.next()
                if close_tok.token_type!=TokenType.CLOSE_PAREN:
                    raise ParseError("Expecting ')' after expression",close_tok.offset)

                return ret
            case TokenType.VARREF:
                self.handle_varref(tok,eating)
                return self.other_factor(mode,eating)
            case TokenType.OPERATOR if tok.op in NOT_OPERATORS:
                return not self.other_factor(mode,eating)
            case TokenType.INTEGER|TokenType.FLOAT|TokenType.VERSION:
                try:
                    return float(tok.s)!=0
                except ValueError:
                    pass

        self.tokens.back()
        return False
